"""Routes package for the courier web application."""

from .connection import router as connection_router
from .documents import router as documents_router
from .health import router as health_router
from .otp import router as otp_router

__all__ = [
    "otp_router",
    "documents_router",
    "connection_router",
    "health_router",
]
