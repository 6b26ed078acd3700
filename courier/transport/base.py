"""Transport abstraction: the chat-protocol client the supervisor drives.

The wire protocol (handshake, encryption, message encoding) lives in the
concrete transport. Courier only needs connect/send primitives and an event
stream reporting pairing codes, authentication, readiness and drops.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Union


class DisconnectReason(Enum):
    """Why the transport dropped."""

    LOGGED_OUT = "logged_out"
    CREDENTIAL_REJECTED = "credential_rejected"
    RATE_LIMITED = "rate_limited"
    CONNECTION_LOST = "connection_lost"
    TIMED_OUT = "timed_out"
    SERVER_CLOSED = "server_closed"
    RESTART_REQUIRED = "restart_required"
    CONNECTION_REPLACED = "connection_replaced"
    HEARTBEAT_FAILED = "heartbeat_failed"
    UNKNOWN = "unknown"

    @property
    def requires_pairing(self) -> bool:
        """Credential is gone; only a human can recover."""
        return self in (DisconnectReason.LOGGED_OUT, DisconnectReason.CREDENTIAL_REJECTED)

    @property
    def is_rate_limit(self) -> bool:
        """Remote side asked us to back off."""
        return self is DisconnectReason.RATE_LIMITED

    @classmethod
    def from_status_code(cls, status_code: Optional[int]) -> "DisconnectReason":
        """
        Classify an HTTP-style close status code.

        Chat gateways commonly reuse HTTP codes for close reasons
        (401 logged out, 408 lost/timed out, 428 closed, 429 overload,
        440 replaced, 515 restart required).

        Args:
            status_code: Close code reported by the transport, if any

        Returns:
            DisconnectReason
        """
        mapping = {
            401: cls.LOGGED_OUT,
            403: cls.CREDENTIAL_REJECTED,
            408: cls.TIMED_OUT,
            411: cls.CREDENTIAL_REJECTED,
            428: cls.SERVER_CLOSED,
            429: cls.RATE_LIMITED,
            440: cls.CONNECTION_REPLACED,
            500: cls.CONNECTION_LOST,
            503: cls.RATE_LIMITED,
            515: cls.RESTART_REQUIRED,
        }
        if status_code is None:
            return cls.CONNECTION_LOST
        return mapping.get(status_code, cls.UNKNOWN)


class TransportEventType(Enum):
    """Kinds of events a transport reports."""

    PAIRING_CODE = "pairing_code"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    CREDENTIALS_UPDATED = "credentials_updated"
    ACTIVITY = "activity"
    MESSAGE_ACK = "message_ack"


@dataclass(frozen=True)
class TransportEvent:
    """
    One event from the transport.

    Attributes:
        type: Event kind
        pairing_code: Code/token to show to a human (PAIRING_CODE)
        credential: Session blob to persist (AUTHENTICATED, CREDENTIALS_UPDATED)
        reason: Disconnect classification (DISCONNECTED)
        detail: Free-form diagnostic text
        message_id: Acknowledged message (MESSAGE_ACK)
        ok: Whether the acknowledged message was accepted (MESSAGE_ACK)
    """

    type: TransportEventType
    pairing_code: Optional[str] = None
    credential: Optional[bytes] = None
    reason: Optional[DisconnectReason] = None
    detail: str = ""
    message_id: Optional[str] = None
    ok: bool = True
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def pairing(cls, code: str) -> "TransportEvent":
        return cls(TransportEventType.PAIRING_CODE, pairing_code=code)

    @classmethod
    def authenticated(cls, credential: Optional[bytes] = None) -> "TransportEvent":
        return cls(TransportEventType.AUTHENTICATED, credential=credential)

    @classmethod
    def ready(cls) -> "TransportEvent":
        return cls(TransportEventType.READY)

    @classmethod
    def disconnected(cls, reason: DisconnectReason, detail: str = "") -> "TransportEvent":
        return cls(TransportEventType.DISCONNECTED, reason=reason, detail=detail)

    @classmethod
    def credentials_updated(cls, credential: bytes) -> "TransportEvent":
        return cls(TransportEventType.CREDENTIALS_UPDATED, credential=credential)

    @classmethod
    def activity(cls, detail: str = "") -> "TransportEvent":
        return cls(TransportEventType.ACTIVITY, detail=detail)

    @classmethod
    def ack(cls, message_id: str, ok: bool = True, detail: str = "") -> "TransportEvent":
        return cls(TransportEventType.MESSAGE_ACK, message_id=message_id, ok=ok, detail=detail)


@dataclass(frozen=True)
class SendReceipt:
    """Transport acknowledgement of an accepted send."""

    message_id: Optional[str] = None
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


TransportEventHandler = Callable[[TransportEvent], None]


class Transport(ABC):
    """
    Abstract chat transport.

    Implementations report lifecycle changes through the handler installed
    with ``set_event_handler``. ``connect`` only starts the attempt; the
    outcome arrives as PAIRING_CODE / AUTHENTICATED / READY / DISCONNECTED
    events. Send methods raise on failure: ``ConnectionError``/``OSError``/
    ``TimeoutError`` (or courier ``TransportError``s) for link failures,
    anything else for message-level rejection.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Get transport name."""
        pass

    @abstractmethod
    def set_event_handler(self, handler: Optional[TransportEventHandler]) -> None:
        """Install the callback that receives transport events."""
        pass

    @abstractmethod
    async def connect(self, credential: Optional[bytes]) -> None:
        """
        Begin connecting.

        Args:
            credential: Stored session blob, or None to request pairing
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection. Must be safe to call when already closed."""
        pass

    @abstractmethod
    async def send_text(self, target: str, body: str) -> SendReceipt:
        """Send a text message."""
        pass

    @abstractmethod
    async def send_document(
        self,
        target: str,
        data: bytes,
        filename: str,
        caption: Optional[str] = None,
        mimetype: str = "application/pdf",
    ) -> SendReceipt:
        """Send a document attachment."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Lightweight keep-alive/presence probe. Raises if the link is dead."""
        pass


@dataclass(frozen=True)
class TextPayload:
    """Plain text message body."""

    body: str


@dataclass(frozen=True)
class DocumentPayload:
    """Document attachment with optional caption."""

    data: bytes
    filename: str
    caption: Optional[str] = None
    mimetype: str = "application/pdf"


Payload = Union[TextPayload, DocumentPayload]
