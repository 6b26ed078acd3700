"""Connection state model shared by the supervisor and its readers."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from courier.transport.base import DisconnectReason


class ConnectionState(Enum):
    """Lifecycle of the single transport session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    CLOSING = "closing"

    @property
    def is_active(self) -> bool:
        """A connection attempt or session is in progress."""
        return self in (
            ConnectionState.CONNECTING,
            ConnectionState.AWAITING_PAIRING,
            ConnectionState.AUTHENTICATED,
            ConnectionState.READY,
        )


@dataclass(frozen=True)
class PairingMaterial:
    """Short-lived pairing code; exists only while AWAITING_PAIRING."""

    code: str
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ConnectionSnapshot:
    """Read-only view of the supervisor's state."""

    state: ConnectionState
    requires_pairing: bool = False
    pairing: Optional[PairingMaterial] = None
    reconnect_attempt: int = 0
    reconnect_delay: Optional[float] = None
    reconnect_scheduled: bool = False
    gave_up: bool = False
    has_credential: bool = False
    last_disconnect_reason: Optional[DisconnectReason] = None
    last_error: Optional[str] = None
    connected_since: Optional[datetime] = None

    @property
    def pairing_code(self) -> Optional[str]:
        return self.pairing.code if self.pairing else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "requires_pairing": self.requires_pairing,
            "pairing_code_available": self.pairing is not None,
            "pairing_code": self.pairing_code,
            "reconnect_attempt": self.reconnect_attempt,
            "reconnect_delay": self.reconnect_delay,
            "reconnect_scheduled": self.reconnect_scheduled,
            "gave_up": self.gave_up,
            "has_credential": self.has_credential,
            "last_disconnect_reason": (
                self.last_disconnect_reason.value if self.last_disconnect_reason else None
            ),
            "last_error": self.last_error,
            "connected_since": self.connected_since.isoformat() if self.connected_since else None,
        }


class SupervisorEventType(Enum):
    """Notifications published to supervisor subscribers."""

    STATE_CHANGED = "state_changed"
    PAIRING_CODE = "pairing_code"
    ACTIVITY = "activity"


@dataclass(frozen=True)
class SupervisorEvent:
    """
    Event delivered to ``ConnectionSupervisor.on_event`` listeners.

    Attributes:
        type: Event kind
        state: State after the event
        previous: State before a STATE_CHANGED
        pairing_code: Code for PAIRING_CODE events
        reason: Disconnect reason when entering DISCONNECTED
        detail: Diagnostic text
    """

    type: SupervisorEventType
    state: ConnectionState
    previous: Optional[ConnectionState] = None
    pairing_code: Optional[str] = None
    reason: Optional[DisconnectReason] = None
    detail: str = ""
