"""Health check routes package."""

from .probes import get_version, router

__all__ = ["router", "get_version"]
