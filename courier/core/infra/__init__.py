"""Infrastructure utilities module."""

from .backoff import BackoffPolicy
from .retry import get_storage_retry

__all__ = [
    "BackoffPolicy",
    "get_storage_retry",
]
