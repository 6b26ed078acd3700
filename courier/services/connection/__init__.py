"""Connection supervision: state machine, health monitor."""

from .health import HealthCheckResult, HealthMonitor, HealthSample
from .state import (
    ConnectionSnapshot,
    ConnectionState,
    PairingMaterial,
    SupervisorEvent,
    SupervisorEventType,
)
from .supervisor import ConnectionSupervisor

__all__ = [
    "ConnectionState",
    "ConnectionSnapshot",
    "ConnectionSupervisor",
    "HealthCheckResult",
    "HealthMonitor",
    "HealthSample",
    "PairingMaterial",
    "SupervisorEvent",
    "SupervisorEventType",
]
