"""Chat transport abstraction and built-in implementations."""

from .base import (
    DisconnectReason,
    DocumentPayload,
    Payload,
    SendReceipt,
    TextPayload,
    Transport,
    TransportEvent,
    TransportEventHandler,
    TransportEventType,
)
from .console import ConsoleTransport
from .loader import load_transport

__all__ = [
    "DisconnectReason",
    "DocumentPayload",
    "Payload",
    "SendReceipt",
    "TextPayload",
    "Transport",
    "TransportEvent",
    "TransportEventHandler",
    "TransportEventType",
    "ConsoleTransport",
    "load_transport",
]
