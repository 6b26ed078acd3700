"""Courier - connection-resilient OTP and document delivery over chat transports."""

__version__ = "1.0.0"
