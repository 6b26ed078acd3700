"""Shared slowapi limiter for the courier web application."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from courier.core.config import get_settings

limiter = Limiter(key_func=get_remote_address)


def otp_rate_limit() -> str:
    """Limit for OTP requests, read from settings on every request."""
    return get_settings().otp_rate_limit
