"""One-time verification codes."""

from .models import OTPSession, VerificationReason, VerificationResult
from .store import OTPSessionStore

__all__ = ["OTPSession", "OTPSessionStore", "VerificationReason", "VerificationResult"]
