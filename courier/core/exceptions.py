"""Custom exception classes for the courier delivery subsystem."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class CourierError(Exception):
    """Base exception for courier."""

    def __init__(
        self, message: str, recoverable: bool = True, details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize courier error.

        Args:
            message: Error message
            recoverable: Whether the error is recoverable with retry
            details: Additional error details
        """
        self.message = message
        self.recoverable = recoverable
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
            "timestamp": self.timestamp,
        }


# Configuration Errors
class ConfigurationError(CourierError):
    """Configuration error occurred."""

    def __init__(
        self,
        message: str = "Configuration error",
        recoverable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, recoverable, details)


# Transport Errors
class TransportError(CourierError):
    """Base class for connection-level transport errors."""

    def __init__(
        self,
        message: str = "Transport error occurred",
        recoverable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, recoverable, details)


class NotConnectedError(TransportError):
    """Send attempted while the connection is not Ready."""

    def __init__(self, message: str = "Transport is not connected", state: Optional[str] = None):
        details = {"state": state} if state else {}
        super().__init__(message, recoverable=True, details=details)


class TransientTransportError(TransportError):
    """Timeout or I/O failure; retried with backoff."""

    def __init__(self, message: str = "Transient transport failure"):
        super().__init__(message, recoverable=True)


class RateLimitedError(TransportError):
    """Remote side signalled overload."""

    def __init__(self, message: str = "Remote rate limit", retry_after: Optional[float] = None):
        """
        Initialize rate limit error.

        Args:
            message: Error message
            retry_after: Seconds the remote asked us to wait, if it said
        """
        self.retry_after = retry_after
        super().__init__(message, recoverable=True, details={"retry_after": retry_after})


class AuthenticationRequiredError(TransportError):
    """Stored credential was rejected; a human must pair the device again."""

    def __init__(self, message: str = "Transport authentication required"):
        super().__init__(message, recoverable=False)


# Message-level Errors
class MessageRejectedError(CourierError):
    """The transport refused one message (bad target, payload too large, ...)."""

    def __init__(self, message: str = "Message rejected", target: Optional[str] = None):
        details = {"target": target} if target else {}
        super().__init__(message, recoverable=True, details=details)


class DeliveryError(CourierError):
    """Base class for delivery queue errors."""

    def __init__(
        self,
        message: str = "Delivery failed",
        recoverable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, recoverable, details)


class QueueFullError(DeliveryError):
    """Delivery queue reached its size limit."""

    def __init__(self, max_size: int):
        super().__init__(
            f"Delivery queue is full ({max_size} messages)",
            details={"max_size": max_size},
        )


class MaxAttemptsExceededError(DeliveryError):
    """A queued message exhausted its retry budget."""

    def __init__(self, message_id: str, attempts: int, last_error: Optional[str] = None):
        self.message_id = message_id
        self.attempts = attempts
        super().__init__(
            f"Message {message_id} dropped after {attempts} attempts",
            details={"message_id": message_id, "attempts": attempts, "last_error": last_error},
        )


# OTP Errors
class OTPError(CourierError):
    """Base class for OTP verification errors. User-facing, never retried."""

    def __init__(
        self,
        message: str = "OTP error occurred",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, recoverable=False, details=details)


class OTPNotFoundError(OTPError):
    """No outstanding code for the recipient."""

    def __init__(self, message: str = "No verification code was requested for this number"):
        super().__init__(message)


class OTPExpiredError(OTPError):
    """The outstanding code is past its expiry."""

    def __init__(self, message: str = "Verification code has expired"):
        super().__init__(message)


class OTPMismatchError(OTPError):
    """The supplied code does not match."""

    def __init__(
        self, message: str = "Verification code is incorrect", attempts_remaining: int = 0
    ):
        self.attempts_remaining = attempts_remaining
        super().__init__(message, details={"attempts_remaining": attempts_remaining})


CONNECTION_ERROR_TYPES = (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)


def classify_send_error(error: BaseException) -> CourierError:
    """
    Map an arbitrary transport exception onto the courier taxonomy.

    Connection-level results are ``TransportError`` subclasses; anything else
    becomes a message-level ``MessageRejectedError``.

    Args:
        error: Exception raised by a transport send

    Returns:
        Courier error instance (the original when it already is one)
    """
    if isinstance(error, CourierError):
        return error
    if isinstance(error, CONNECTION_ERROR_TYPES):
        return TransientTransportError(f"{type(error).__name__}: {error}")
    return MessageRejectedError(f"{type(error).__name__}: {error}")
