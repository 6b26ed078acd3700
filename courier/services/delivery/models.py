"""Data models for queued deliveries and their outcomes."""

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from courier.transport.base import DocumentPayload, Payload, TextPayload


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageKind(Enum):
    TEXT = "text"
    DOCUMENT = "document"


class MessagePurpose(Enum):
    """Why a message is sent; drives expiry and checkpoint rules."""

    OTP = "otp"
    DOCUMENT = "document"
    ADMIN = "admin"
    GENERAL = "general"


class DeliveryStatus(Enum):
    """Delivered and Failed are terminal; Queued means a final outcome is pending."""

    DELIVERED = "delivered"
    QUEUED = "queued"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not DeliveryStatus.QUEUED


@dataclass
class QueuedMessage:
    """
    One message waiting for a Ready transport.

    Attributes:
        target: Normalized recipient
        payload: Text or document payload
        id: Message identifier returned to callers
        enqueued_at: When the message entered the queue
        attempt_count: Message-level failures so far
        purpose: Why the message exists
        best_effort: Terminal failure is only logged, nobody awaits it
        expires_at: Drop instead of sending after this instant (OTP codes)
        last_error: Most recent failure text
    """

    target: str
    payload: Payload
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: datetime = field(default_factory=_utcnow)
    attempt_count: int = 0
    purpose: MessagePurpose = MessagePurpose.GENERAL
    best_effort: bool = False
    expires_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def kind(self) -> MessageKind:
        if isinstance(self.payload, DocumentPayload):
            return MessageKind.DOCUMENT
        return MessageKind.TEXT

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the queue checkpoint (document bytes as base64)."""
        if isinstance(self.payload, DocumentPayload):
            payload: Dict[str, Any] = {
                "data": base64.b64encode(self.payload.data).decode("ascii"),
                "filename": self.payload.filename,
                "caption": self.payload.caption,
                "mimetype": self.payload.mimetype,
            }
        else:
            payload = {"body": self.payload.body}
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target": self.target,
            "payload": payload,
            "enqueued_at": self.enqueued_at.isoformat(),
            "attempt_count": self.attempt_count,
            "purpose": self.purpose.value,
            "best_effort": self.best_effort,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedMessage":
        raw = data["payload"]
        payload: Payload
        if data["kind"] == MessageKind.DOCUMENT.value:
            payload = DocumentPayload(
                data=base64.b64decode(raw["data"]),
                filename=raw["filename"],
                caption=raw.get("caption"),
                mimetype=raw.get("mimetype") or "application/pdf",
            )
        else:
            payload = TextPayload(body=raw["body"])

        expires_at = data.get("expires_at")
        return cls(
            target=data["target"],
            payload=payload,
            id=data["id"],
            enqueued_at=datetime.fromisoformat(data["enqueued_at"]),
            attempt_count=int(data.get("attempt_count", 0)),
            purpose=MessagePurpose(data.get("purpose", MessagePurpose.GENERAL.value)),
            best_effort=bool(data.get("best_effort", False)),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of a delivery request, immediate or deferred."""

    message_id: str
    status: DeliveryStatus
    target: str
    kind: MessageKind = MessageKind.TEXT
    attempts: int = 0
    error: Optional[str] = None
    at: datetime = field(default_factory=_utcnow)

    @property
    def delivered(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "status": self.status.value,
            "kind": self.kind.value,
            "attempts": self.attempts,
            "error": self.error,
            "at": self.at.isoformat(),
        }


@dataclass(frozen=True)
class OTPRequestResult:
    """
    Result of ``DeliveryCoordinator.request_otp``.

    The code is always present, whatever happened to the notification.
    """

    recipient: str
    code: str
    expires_at: datetime
    delivery: DeliveryOutcome

    @property
    def success(self) -> bool:
        return True

    def to_dict(self, include_code: bool = True) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "expires_at": self.expires_at.isoformat(),
            "delivery": self.delivery.to_dict(),
        }
        if include_code:
            result["code"] = self.code
        return result
