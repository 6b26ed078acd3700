"""Pydantic models for the courier web API."""

from .delivery import (
    DocumentRequest,
    DocumentResponse,
    OTPRequest,
    OTPResponse,
    OTPVerifyRequest,
    OTPVerifyResponse,
)

__all__ = [
    "OTPRequest",
    "OTPResponse",
    "OTPVerifyRequest",
    "OTPVerifyResponse",
    "DocumentRequest",
    "DocumentResponse",
]
