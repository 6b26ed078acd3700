"""In-memory store of outstanding one-time codes.

One active session per recipient, 10 minute expiry, 3 attempts. Sessions
are consumed on success, deleted on expiry or exhausted attempts, and
garbage-collected by ``sweep_expired``.
"""

import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from loguru import logger

from courier.constants import OTP
from courier.utils.masking import mask_otp, mask_phone

from .models import OTPSession, VerificationReason, VerificationResult

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OTPSessionStore:
    """Thread-safe table of outstanding OTP sessions keyed by recipient."""

    def __init__(
        self,
        digits: int = OTP.DEFAULT_DIGITS,
        ttl_seconds: int = OTP.TTL_SECONDS,
        max_attempts: int = OTP.MAX_ATTEMPTS,
        clock: Clock = _utcnow,
    ):
        """
        Initialize OTP session store.

        Args:
            digits: Width of generated codes
            ttl_seconds: Lifetime of a code
            max_attempts: Failed verifications allowed before the session is deleted
            clock: Source of "now" (injectable for tests)
        """
        if not OTP.MIN_DIGITS <= digits <= OTP.MAX_DIGITS:
            raise ValueError(f"digits must be between {OTP.MIN_DIGITS} and {OTP.MAX_DIGITS}")
        self._digits = digits
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_attempts = max_attempts
        self._clock = clock
        self._sessions: Dict[str, OTPSession] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _generate_code(self) -> str:
        # Uniform over the full fixed-width range, leading zeros included
        return f"{secrets.randbelow(10**self._digits):0{self._digits}d}"

    def issue(self, recipient: str, display_name: Optional[str] = None) -> OTPSession:
        """
        Generate and store a fresh code, replacing any outstanding one.

        Args:
            recipient: Normalized phone number
            display_name: Optional name for the message greeting

        Returns:
            The new OTPSession (its ``code`` is what gets delivered)
        """
        now = self._clock()
        session = OTPSession(
            recipient=recipient,
            code=self._generate_code(),
            issued_at=now,
            expires_at=now + self._ttl,
            display_name=display_name,
        )
        with self._lock:
            replaced = recipient in self._sessions
            self._sessions[recipient] = session

        logger.info(
            f"OTP {mask_otp(session.code)} issued for {mask_phone(recipient)} "
            f"(expires {session.expires_at.isoformat()}, replaced={replaced})"
        )
        return session

    def verify(self, recipient: str, supplied_code: str) -> VerificationResult:
        """
        Check a supplied code.

        Args:
            recipient: Normalized phone number
            supplied_code: Code typed by the user

        Returns:
            VerificationResult; VERIFIED consumes the session
        """
        now = self._clock()
        supplied = (supplied_code or "").strip()

        with self._lock:
            session = self._sessions.get(recipient)
            if session is None:
                return VerificationResult(False, VerificationReason.NOT_FOUND)

            if session.is_expired(now):
                del self._sessions[recipient]
                logger.info(f"OTP for {mask_phone(recipient)} expired before verification")
                return VerificationResult(False, VerificationReason.EXPIRED)

            if secrets.compare_digest(session.code.encode(), supplied.encode()):
                del self._sessions[recipient]
                logger.info(f"OTP verified for {mask_phone(recipient)}")
                return VerificationResult(True, VerificationReason.VERIFIED)

            session.attempts_used += 1
            remaining = max(0, self._max_attempts - session.attempts_used)
            if remaining == 0:
                del self._sessions[recipient]

        if remaining == 0:
            logger.warning(
                f"OTP for {mask_phone(recipient)} invalidated after {self._max_attempts} "
                "failed attempts"
            )
        else:
            logger.info(f"OTP mismatch for {mask_phone(recipient)} ({remaining} attempts left)")
        return VerificationResult(False, VerificationReason.MISMATCH, attempts_remaining=remaining)

    def sweep_expired(self) -> int:
        """
        Remove sessions past expiry that were never verified.

        Returns:
            Number of sessions removed
        """
        now = self._clock()
        with self._lock:
            expired = [r for r, s in self._sessions.items() if s.is_expired(now)]
            for recipient in expired:
                del self._sessions[recipient]

        if expired:
            logger.info(f"Swept {len(expired)} expired OTP sessions")
        return len(expired)

    def get(self, recipient: str) -> Optional[OTPSession]:
        """Get the outstanding session for a recipient (a copy is not made)."""
        with self._lock:
            return self._sessions.get(recipient)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
