"""Application-wide constants for courier."""

from dataclasses import dataclass
from typing import Dict, Final


class OTP:
    """One-time code policy."""

    TTL_SECONDS: Final[int] = 600  # 10 minutes, fixed
    MAX_ATTEMPTS: Final[int] = 3
    DEFAULT_DIGITS: Final[int] = 6
    MIN_DIGITS: Final[int] = 4
    MAX_DIGITS: Final[int] = 8
    SWEEP_INTERVAL_SECONDS: Final[int] = 300


class Queue:
    """Delivery queue defaults."""

    MAX_ATTEMPTS: Final[int] = 3
    MAX_SIZE: Final[int] = 100
    MAX_AGE_SECONDS: Final[int] = 1800
    RETRY_DELAY_SECONDS: Final[float] = 3.0
    POLL_INTERVAL_SECONDS: Final[float] = 5.0
    OUTCOME_HISTORY: Final[int] = 500


class Heartbeat:
    """Health monitor defaults."""

    INTERVAL_SECONDS: Final[float] = 30.0
    PROBE_TIMEOUT_SECONDS: Final[float] = 10.0
    STALE_MULTIPLIER: Final[int] = 3


class Timeouts:
    """Transport timeouts in seconds."""

    CONNECT: Final[float] = 60.0
    SEND: Final[float] = 10.0
    STOP: Final[float] = 10.0


@dataclass(frozen=True)
class ConnectionProfile:
    """Reconnect budget preset for one deployment style."""

    name: str
    max_attempts: int
    base_delay: float
    max_delay: float


CONNECTION_PROFILES: Dict[str, ConnectionProfile] = {
    "standard": ConnectionProfile("standard", max_attempts=25, base_delay=2.0, max_delay=60.0),
    "persistent": ConnectionProfile("persistent", max_attempts=50, base_delay=5.0, max_delay=300.0),
}

RATE_LIMIT_FLOOR_SECONDS: Final[float] = 30.0

DEFAULT_COUNTRY_CODE: Final[str] = "964"
DEFAULT_CREDENTIAL_PATH: Final[str] = "data/transport_credentials.bin"
DEFAULT_TRANSPORT: Final[str] = "courier.transport.console:create_transport"
