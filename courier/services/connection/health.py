"""Heartbeat monitor that catches zombie transport sessions."""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loguru import logger

from courier.constants import Heartbeat
from courier.transport.base import DisconnectReason

from .state import ConnectionState, SupervisorEvent, SupervisorEventType
from .supervisor import ConnectionSupervisor


class HealthCheckResult(Enum):
    """Outcome of one monitor tick."""

    SKIPPED = "skipped"
    HEALTHY = "healthy"
    PROBE_FAILED = "probe_failed"
    STALE = "stale"


@dataclass
class HealthSample:
    """Monotonic timestamps of the last probe success and last observed activity."""

    last_heartbeat_at: Optional[float] = None
    last_observed_activity_at: Optional[float] = None


class HealthMonitor:
    """
    Periodic liveness probe for a Ready session.

    The monitor never changes connection state itself. A failed probe is
    reported to the supervisor as a link failure; prolonged silence makes it
    ask the supervisor for a stop/start cycle.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        interval: float = Heartbeat.INTERVAL_SECONDS,
        probe_timeout: float = Heartbeat.PROBE_TIMEOUT_SECONDS,
        stale_multiplier: int = Heartbeat.STALE_MULTIPLIER,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize health monitor.

        Args:
            supervisor: Connection supervisor to probe through and signal
            interval: Seconds between probes
            probe_timeout: Seconds a single probe may take
            stale_multiplier: Silence longer than interval * multiplier forces a restart
            clock: Monotonic clock (injectable for tests)
        """
        self._supervisor = supervisor
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.stale_multiplier = stale_multiplier
        self._clock = clock
        self._sample = HealthSample()
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._running = False
        self._consecutive_failures = 0

    @property
    def sample(self) -> HealthSample:
        return self._sample

    @property
    def stale_after(self) -> float:
        return self.interval * self.stale_multiplier

    def start(self) -> None:
        """Subscribe to supervisor events and start the probe loop."""
        if self._running:
            return
        self._running = True
        self._unsubscribe = self._supervisor.on_event(self._on_supervisor_event)
        self._task = asyncio.create_task(self._run(), name="health-monitor")
        logger.info(
            f"Health monitor started (interval: {self.interval}s, stale after {self.stale_after}s)"
        )

    async def stop(self) -> None:
        """Stop the probe loop."""
        self._running = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health monitor stopped")

    def record_activity(self) -> None:
        """Note that the transport did something (inbound event or successful send)."""
        self._sample.last_observed_activity_at = self._clock()

    def reset(self) -> None:
        """Start a fresh sample; called whenever the session becomes Ready."""
        now = self._clock()
        self._sample = HealthSample(last_heartbeat_at=None, last_observed_activity_at=now)
        self._consecutive_failures = 0

    def is_stale(self) -> bool:
        """Check whether activity has been absent for longer than ``stale_after``."""
        last = self._sample.last_observed_activity_at
        if last is None:
            return False
        return self._clock() - last > self.stale_after

    async def check_once(self) -> HealthCheckResult:
        """
        Run a single monitor tick.

        Returns:
            What the tick found and acted on
        """
        if self._supervisor.current_state() is not ConnectionState.READY:
            return HealthCheckResult.SKIPPED

        if self._sample.last_observed_activity_at is None:
            self.reset()

        if self.is_stale():
            idle = self._clock() - (self._sample.last_observed_activity_at or 0.0)
            logger.warning(f"No transport activity for {idle:.0f}s, forcing reconnect")
            self.reset()
            await self._supervisor.restart(detail=f"no activity for {idle:.0f}s")
            return HealthCheckResult.STALE

        try:
            await self._supervisor.ping(timeout=self.probe_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._consecutive_failures += 1
            if self._supervisor.current_state() is not ConnectionState.READY:
                # Session went away while probing; nothing left to report
                return HealthCheckResult.SKIPPED
            logger.warning(f"Heartbeat probe failed: {type(e).__name__}: {e}")
            await self._supervisor.report_link_failure(
                detail=f"heartbeat probe failed: {type(e).__name__}",
                reason=DisconnectReason.HEARTBEAT_FAILED,
            )
            return HealthCheckResult.PROBE_FAILED

        now = self._clock()
        self._sample.last_heartbeat_at = now
        self._sample.last_observed_activity_at = now
        self._consecutive_failures = 0
        logger.debug("Heartbeat ok")
        return HealthCheckResult.HEALTHY

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Health check error: {e}", exc_info=True)

    def _on_supervisor_event(self, event: SupervisorEvent) -> None:
        if event.type is SupervisorEventType.ACTIVITY:
            self.record_activity()
        elif event.type is SupervisorEventType.STATE_CHANGED and event.state is ConnectionState.READY:
            self.reset()

    def to_dict(self) -> Dict[str, Any]:
        """
        Get current status of the monitor.

        Returns:
            Dictionary with status information
        """
        now = self._clock()
        heartbeat = self._sample.last_heartbeat_at
        activity = self._sample.last_observed_activity_at
        return {
            "running": self._running,
            "interval": self.interval,
            "seconds_since_heartbeat": None if heartbeat is None else round(now - heartbeat, 1),
            "seconds_since_activity": None if activity is None else round(now - activity, 1),
            "consecutive_failures": self._consecutive_failures,
        }
