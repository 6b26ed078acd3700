"""Configuration management module."""

from .settings import CourierSettings, get_settings, reset_settings

__all__ = [
    "CourierSettings",
    "get_settings",
    "reset_settings",
]
