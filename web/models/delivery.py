"""Request/response models for the delivery API."""

import base64
import binascii
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class OTPRequest(BaseModel):
    """OTP request model."""

    phone_number: str = Field(..., min_length=4, max_length=32)
    display_name: Optional[str] = Field(default=None, max_length=100)
    wait_timeout: Optional[float] = Field(
        default=None, ge=0, le=60, description="Seconds to wait for the delivery outcome"
    )


class OTPResponse(BaseModel):
    """OTP response model. The code is always returned for fallback display."""

    success: bool
    code: str
    expires_at: str
    delivery: Dict[str, Any]


class OTPVerifyRequest(BaseModel):
    """OTP verification request model."""

    phone_number: str = Field(..., min_length=4, max_length=32)
    code: str = Field(..., min_length=1, max_length=16)


class OTPVerifyResponse(BaseModel):
    """OTP verification response model."""

    valid: bool
    reason: str
    attempts_remaining: int = 0
    message: Optional[str] = None


class DocumentRequest(BaseModel):
    """Document delivery request model."""

    target: str = Field(..., min_length=4, max_length=32)
    document_base64: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1, max_length=255)
    caption: Optional[str] = Field(default=None, max_length=1024)
    mimetype: str = Field(default="application/pdf", max_length=100)
    wait_timeout: Optional[float] = Field(default=None, ge=0, le=60)

    @field_validator("document_base64")
    @classmethod
    def validate_base64(cls, v: str) -> str:
        """Reject payloads that are not valid base64."""
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("document_base64 must be valid base64")
        return v

    def document_bytes(self) -> bytes:
        return base64.b64decode(self.document_base64)


class DocumentResponse(BaseModel):
    """Document delivery response model."""

    accepted: bool
    delivery: Dict[str, Any]
