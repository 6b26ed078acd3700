"""Data models for the OTP session store."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from courier.core.exceptions import (
    OTPError,
    OTPExpiredError,
    OTPMismatchError,
    OTPNotFoundError,
)


class VerificationReason(Enum):
    """Outcome of one verification attempt."""

    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


@dataclass
class OTPSession:
    """
    An outstanding one-time code.

    Attributes:
        recipient: Normalized phone number the code was issued to
        code: The numeric code
        issued_at: When the code was generated
        expires_at: After this instant the code is unusable
        attempts_used: Failed verification attempts so far
        display_name: Name used when addressing the recipient
    """

    recipient: str
    code: str
    issued_at: datetime
    expires_at: datetime
    attempts_used: int = 0
    display_name: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class VerificationResult:
    """Typed outcome of ``OTPSessionStore.verify``."""

    valid: bool
    reason: VerificationReason
    attempts_remaining: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason.value,
            "attempts_remaining": self.attempts_remaining,
        }

    def to_error(self) -> Optional[OTPError]:
        """Exception equivalent of a failed result (None when valid)."""
        if self.reason is VerificationReason.NOT_FOUND:
            return OTPNotFoundError()
        if self.reason is VerificationReason.EXPIRED:
            return OTPExpiredError()
        if self.reason is VerificationReason.MISMATCH:
            return OTPMismatchError(attempts_remaining=self.attempts_remaining)
        return None
