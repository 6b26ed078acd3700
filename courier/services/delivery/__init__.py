"""Delivery queue and coordinator."""

from .checkpoint import QueueCheckpoint
from .coordinator import DeliveryCoordinator
from .models import (
    DeliveryOutcome,
    DeliveryStatus,
    MessageKind,
    MessagePurpose,
    OTPRequestResult,
    QueuedMessage,
)
from .queue import DeliveryQueue
from .templates import MessageTemplates

__all__ = [
    "DeliveryCoordinator",
    "DeliveryOutcome",
    "DeliveryQueue",
    "DeliveryStatus",
    "MessageKind",
    "MessagePurpose",
    "MessageTemplates",
    "OTPRequestResult",
    "QueueCheckpoint",
    "QueuedMessage",
]
