"""Delivery coordinator: the one entry point callers use.

Sends immediately when the transport is Ready and nothing is waiting,
otherwise queues. The queue is drained in FIFO order, one message at a
time, every time the supervisor reports Ready.
"""

import asyncio
import inspect
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from courier.constants import DEFAULT_COUNTRY_CODE, OTP, Queue
from courier.core.exceptions import (
    CourierError,
    MaxAttemptsExceededError,
    MessageRejectedError,
    QueueFullError,
    TransportError,
)
from courier.core.infra.backoff import BackoffPolicy
from courier.services.connection import (
    ConnectionSnapshot,
    ConnectionState,
    ConnectionSupervisor,
    HealthMonitor,
    SupervisorEvent,
    SupervisorEventType,
)
from courier.services.credentials import CredentialStore, FileCredentialStore
from courier.services.otp import OTPSessionStore, VerificationReason, VerificationResult
from courier.transport.base import DocumentPayload, TextPayload, Transport
from courier.utils.masking import mask_phone
from courier.utils.phone import normalize_recipient
from courier.utils.qr import make_qr_data_uri

from .checkpoint import QueueCheckpoint
from .models import (
    DeliveryOutcome,
    DeliveryStatus,
    MessagePurpose,
    OTPRequestResult,
    QueuedMessage,
)
from .queue import DeliveryQueue
from .templates import MessageTemplates

OutcomeListener = Callable[[DeliveryOutcome], object]

_DELIVERED = "delivered"
_REJECTED = "rejected"
_LINK_DOWN = "link_down"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryCoordinator:
    """
    Public facade for OTP and document delivery.

    Transport failures never escape this class: every call returns a
    DeliveryOutcome (Delivered, Queued or Failed). Only caller input errors
    (an unusable phone number, an empty document) raise MessageRejectedError.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        otp_store: Optional[OTPSessionStore] = None,
        queue: Optional[DeliveryQueue] = None,
        health_monitor: Optional[HealthMonitor] = None,
        templates: Optional[MessageTemplates] = None,
        checkpoint: Optional[QueueCheckpoint] = None,
        max_attempts: int = Queue.MAX_ATTEMPTS,
        retry_delay: float = Queue.RETRY_DELAY_SECONDS,
        poll_interval: float = Queue.POLL_INTERVAL_SECONDS,
        max_age: float = Queue.MAX_AGE_SECONDS,
        sweep_interval: float = OTP.SWEEP_INTERVAL_SECONDS,
        admin_recipient: Optional[str] = None,
        country_code: str = DEFAULT_COUNTRY_CODE,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize delivery coordinator.

        Args:
            supervisor: Connection supervisor owning the transport
            otp_store: Store of outstanding codes
            queue: Pending delivery queue
            health_monitor: Optional heartbeat monitor started with the coordinator
            templates: Message wording
            checkpoint: Optional queue persistence across restarts
            max_attempts: Message-level failures allowed per message
            retry_delay: Pause before retrying a rejected message
            poll_interval: Maintenance tick (purge, drain nudge)
            max_age: Seconds a message may wait before it is purged
            sweep_interval: Seconds between expired OTP sweeps
            admin_recipient: Number for notify_admin (None disables it)
            country_code: Country code for local numbers
            clock: Source of "now" (injectable for tests)
        """
        self.supervisor = supervisor
        self.otp_store = otp_store if otp_store is not None else OTPSessionStore()
        self.queue = queue if queue is not None else DeliveryQueue()
        self.health_monitor = health_monitor
        self.templates = templates or MessageTemplates()
        self.checkpoint = checkpoint

        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._poll_interval = poll_interval
        self._max_age = max_age
        self._sweep_interval = sweep_interval
        self._admin_recipient = admin_recipient
        self._country_code = country_code
        self._clock = clock

        self._send_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._pending: Dict[str, "asyncio.Future[DeliveryOutcome]"] = {}
        self._history: "OrderedDict[str, DeliveryOutcome]" = OrderedDict()
        self._listeners: List[OutcomeListener] = []
        self._listener_tasks: set = set()
        self._in_flight: Optional[str] = None

        self._running = False
        self._closing = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings=None,
        transport: Optional[Transport] = None,
        credential_store: Optional[CredentialStore] = None,
    ) -> "DeliveryCoordinator":
        """
        Wire the whole subsystem from configuration.

        Args:
            settings: CourierSettings (defaults to the global settings)
            transport: Transport instance (defaults to settings.transport factory)
            credential_store: Credential store (defaults to the encrypted file store)

        Returns:
            Coordinator ready to start()
        """
        from courier.core.config import get_settings
        from courier.transport.loader import load_transport

        settings = settings or get_settings()
        encryption_key = (
            settings.encryption_key.get_secret_value() if settings.encryption_key else None
        )

        transport = transport or load_transport(settings.transport)
        credential_store = credential_store or FileCredentialStore(
            settings.credential_path,
            encryption_key=encryption_key,
            require_encryption=settings.is_production(),
        )
        policy = BackoffPolicy.from_profile(
            settings.resolved_profile(),
            multiplier=settings.backoff_multiplier,
            jitter=settings.backoff_jitter,
            rate_limit_floor=settings.rate_limit_floor,
        )
        supervisor = ConnectionSupervisor(
            transport,
            credential_store,
            policy=policy,
            connect_timeout=settings.connect_timeout,
            send_timeout=settings.send_timeout,
        )
        health_monitor = HealthMonitor(
            supervisor,
            interval=settings.heartbeat_interval,
            probe_timeout=settings.heartbeat_timeout,
            stale_multiplier=settings.heartbeat_stale_multiplier,
        )
        checkpoint = (
            QueueCheckpoint(settings.queue_checkpoint_path, encryption_key=encryption_key)
            if settings.queue_checkpoint_path
            else None
        )

        return cls(
            supervisor,
            otp_store=OTPSessionStore(digits=settings.otp_digits),
            queue=DeliveryQueue(max_size=settings.queue_max_size),
            health_monitor=health_monitor,
            templates=MessageTemplates(sender_name=settings.sender_name),
            checkpoint=checkpoint,
            max_attempts=settings.queue_max_attempts,
            retry_delay=settings.queue_retry_delay,
            poll_interval=settings.queue_poll_interval,
            max_age=settings.queue_max_age,
            sweep_interval=settings.otp_sweep_interval,
            admin_recipient=settings.admin_recipient,
            country_code=settings.default_country_code,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore the checkpoint, start background loops and connect."""
        if self._running:
            return
        self._running = True
        self._closing = False
        self._unsubscribe = self.supervisor.on_event(self._on_supervisor_event)

        if self.checkpoint is not None:
            for message in await self.checkpoint.load_async():
                try:
                    self.queue.enqueue(message)
                except QueueFullError:
                    logger.warning(f"Queue full while restoring checkpoint, dropping {message.id}")
                    continue
                self._pending[message.id] = asyncio.get_running_loop().create_future()

        self._drain_task = asyncio.create_task(self._drain_loop(), name="delivery-drain")
        self._maintenance_task = asyncio.create_task(
            self._maintenance_loop(), name="delivery-maintenance"
        )
        if self.health_monitor is not None:
            self.health_monitor.start()

        logger.info("🚀 Delivery coordinator started")
        await self.supervisor.start()
        if len(self.queue):
            self._wake.set()

    async def stop(self) -> None:
        """Stop background loops, close the transport and checkpoint the queue."""
        if not self._running:
            return
        self._closing = True
        self._running = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        if self.health_monitor is not None:
            await self.health_monitor.stop()

        for task in (self._drain_task, self._maintenance_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._drain_task = None
        self._maintenance_task = None

        await self.supervisor.close()

        if self.checkpoint is not None:
            await self.checkpoint.save_async(self.queue.snapshot())

        # Waiters get the last known (still queued) state instead of hanging
        for message_id, future in list(self._pending.items()):
            if not future.done():
                future.set_result(self._queued_outcome(message_id, error="coordinator stopped"))
        self._pending.clear()
        logger.info("🛑 Delivery coordinator stopped")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def request_otp(
        self,
        phone_number: str,
        display_name: Optional[str] = None,
        wait_timeout: Optional[float] = None,
    ) -> OTPRequestResult:
        """
        Issue a verification code and deliver it (now or later).

        The code is stored and returned whatever the transport state, so the
        calling flow can always fall back to showing it out-of-band.

        Args:
            phone_number: Number as entered by the user
            display_name: Optional name for the greeting
            wait_timeout: If set, wait up to this many seconds for a final outcome

        Returns:
            OTPRequestResult with the code and the delivery outcome

        Raises:
            MessageRejectedError: If the phone number is unusable
        """
        recipient = normalize_recipient(phone_number, self._country_code)
        session = self.otp_store.issue(recipient, display_name)
        ttl_minutes = int(self.otp_store.ttl.total_seconds() // 60)

        message = QueuedMessage(
            target=recipient,
            payload=TextPayload(self.templates.otp(session.code, ttl_minutes, display_name)),
            enqueued_at=self._clock(),
            purpose=MessagePurpose.OTP,
            expires_at=session.expires_at,
        )
        delivery = await self._deliver(message, wait_timeout)
        return OTPRequestResult(
            recipient=recipient,
            code=session.code,
            expires_at=session.expires_at,
            delivery=delivery,
        )

    def verify_otp(self, phone_number: str, code: str) -> VerificationResult:
        """
        Check a code against the outstanding session.

        Returns:
            VerificationResult (an unusable number is reported as NOT_FOUND)
        """
        try:
            recipient = normalize_recipient(phone_number, self._country_code)
        except MessageRejectedError:
            return VerificationResult(False, VerificationReason.NOT_FOUND)
        return self.otp_store.verify(recipient, code)

    async def send_document(
        self,
        target: str,
        data: bytes,
        filename: str,
        caption: Optional[str] = None,
        mimetype: str = "application/pdf",
        wait_timeout: Optional[float] = None,
    ) -> DeliveryOutcome:
        """
        Deliver a document (invoice, receipt) now or via the queue.

        Raises:
            MessageRejectedError: If the target or the document is unusable
        """
        recipient = normalize_recipient(target, self._country_code)
        if not data:
            raise MessageRejectedError("Document is empty", target=target)

        message = QueuedMessage(
            target=recipient,
            payload=DocumentPayload(
                data=data,
                filename=filename,
                caption=self.templates.document_caption(filename, caption),
                mimetype=mimetype,
            ),
            enqueued_at=self._clock(),
            purpose=MessagePurpose.DOCUMENT,
        )
        return await self._deliver(message, wait_timeout)

    async def send_text(
        self,
        target: str,
        body: str,
        wait_timeout: Optional[float] = None,
        best_effort: bool = False,
    ) -> DeliveryOutcome:
        """Deliver a plain text message now or via the queue."""
        recipient = normalize_recipient(target, self._country_code)
        message = QueuedMessage(
            target=recipient,
            payload=TextPayload(body),
            enqueued_at=self._clock(),
            best_effort=best_effort,
        )
        return await self._deliver(message, wait_timeout)

    async def notify_admin(self, body: str) -> Optional[DeliveryOutcome]:
        """
        Best-effort notification to the configured admin number.

        Never raises; failures are logged.

        Returns:
            Outcome, or None when no admin recipient is configured
        """
        if not self._admin_recipient:
            logger.debug("No admin recipient configured, skipping admin notification")
            return None
        try:
            recipient = normalize_recipient(self._admin_recipient, self._country_code)
        except MessageRejectedError as e:
            logger.warning(f"Admin recipient is invalid: {e.message}")
            return None

        message = QueuedMessage(
            target=recipient,
            payload=TextPayload(self.templates.admin_alert(body, self._clock())),
            enqueued_at=self._clock(),
            purpose=MessagePurpose.ADMIN,
            best_effort=True,
        )
        return await self._deliver(message, None)

    async def wait_for_outcome(
        self, message_id: str, timeout: Optional[float] = None
    ) -> Optional[DeliveryOutcome]:
        """
        Wait for the final outcome of a queued message.

        Args:
            message_id: Id from a QUEUED outcome
            timeout: Seconds to wait (None waits indefinitely)

        Returns:
            Terminal outcome, the current QUEUED outcome on timeout, or None
            for an unknown id
        """
        if message_id in self._history:
            return self._history[message_id]
        future = self._pending.get(message_id)
        if future is None:
            return None
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            return self._queued_outcome(message_id)

    def get_outcome(self, message_id: str) -> Optional[DeliveryOutcome]:
        """Latest known outcome for a message, without waiting."""
        if message_id in self._history:
            return self._history[message_id]
        if message_id in self._pending:
            return self._queued_outcome(message_id)
        return None

    def on_outcome(self, listener: OutcomeListener) -> Callable[[], None]:
        """
        Subscribe to terminal outcomes (Delivered or Failed) of every message.

        Returns:
            Function that removes the subscription
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def status(self) -> Dict[str, Any]:
        """
        Connection and queue status for the admin screen.

        Returns:
            Dictionary with connection state, pairing code (and QR image) and
            queue depth
        """
        snapshot = self.supervisor.snapshot()
        data = snapshot.to_dict()
        data["pairing_code_image"] = (
            make_qr_data_uri(snapshot.pairing_code) if snapshot.pairing_code else None
        )
        data["transport"] = self.supervisor.transport_name
        data["queue_depth"] = len(self.queue)
        data["outstanding_otps"] = len(self.otp_store)
        data["running"] = self._running
        data["health"] = self.health_monitor.to_dict() if self.health_monitor else None
        return data

    async def start_connection(self) -> ConnectionSnapshot:
        return await self.supervisor.start()

    async def stop_connection(self) -> ConnectionSnapshot:
        return await self.supervisor.stop()

    async def reset_session(self) -> ConnectionSnapshot:
        """Forget the stored credential and reconnect to obtain a new pairing code."""
        return await self.supervisor.reset_session()

    # ------------------------------------------------------------------
    # Delivery internals
    # ------------------------------------------------------------------

    async def _deliver(
        self, message: QueuedMessage, wait_timeout: Optional[float]
    ) -> DeliveryOutcome:
        # Anything already queued must go first to keep per-target FIFO
        if self.supervisor.current_state() is ConnectionState.READY and not len(self.queue):
            result, error = await self._attempt(message)
            if result == _DELIVERED:
                return self._finish(message, DeliveryStatus.DELIVERED, attempts=1)
            if result == _REJECTED:
                message.attempt_count = 1
                message.last_error = error
                if message.attempt_count >= self._max_attempts:
                    return self._finish(message, DeliveryStatus.FAILED, error=error)

        outcome = self._enqueue(message)
        if wait_timeout is not None and outcome.status is DeliveryStatus.QUEUED:
            final = await self.wait_for_outcome(message.id, wait_timeout)
            if final is not None:
                return final
        return outcome

    def _enqueue(self, message: QueuedMessage) -> DeliveryOutcome:
        try:
            self.queue.enqueue(message)
        except QueueFullError:
            # Evict stale entries before refusing new work
            self.purge_stale()
            try:
                self.queue.enqueue(message)
            except QueueFullError as e:
                logger.error(
                    f"Cannot queue message for {mask_phone(message.target)}: {e.message}"
                )
                return self._finish(message, DeliveryStatus.FAILED, error=e.message)

        self._pending[message.id] = asyncio.get_running_loop().create_future()
        if self.supervisor.current_state() is ConnectionState.READY:
            self._wake.set()
        return self._queued_outcome(message.id)

    async def _attempt(self, message: QueuedMessage) -> Tuple[str, Optional[str]]:
        async with self._send_lock:
            self._in_flight = message.id
            try:
                await self.supervisor.send(message.target, message.payload)
            except TransportError as e:
                logger.info(
                    f"Link unavailable for {message.id} ({type(e).__name__}: {e.message})"
                )
                return _LINK_DOWN, e.message
            except CourierError as e:
                logger.warning(
                    f"Message {message.id} to {mask_phone(message.target)} rejected: {e.message}"
                )
                return _REJECTED, e.message
            finally:
                self._in_flight = None
        return _DELIVERED, None

    async def drain_queue(self) -> int:
        """
        Send queued messages in FIFO order while the transport is Ready.

        A rejected head is retried (after ``retry_delay``) before anything
        behind it; a connection-level failure pauses the drain without
        counting an attempt.

        Returns:
            Number of messages delivered
        """
        delivered = 0
        while not self._closing:
            if self.supervisor.current_state() is not ConnectionState.READY:
                break
            message = self.queue.peek()
            if message is None:
                break

            if message.is_expired(self._clock()):
                if self.queue.remove(message.id) is not None:
                    self._finish(message, DeliveryStatus.FAILED, error="expired before delivery")
                continue

            result, error = await self._attempt(message)
            if result == _DELIVERED:
                self.queue.remove(message.id)
                self._finish(message, DeliveryStatus.DELIVERED, attempts=message.attempt_count + 1)
                delivered += 1
                continue

            if result == _LINK_DOWN:
                logger.info(f"Drain paused, {len(self.queue)} message(s) waiting for reconnect")
                break

            updated = self.queue.record_failure(message.id, error or "rejected")
            if updated is None:
                continue
            if updated.attempt_count >= self._max_attempts:
                self.queue.remove(updated.id)
                failure = MaxAttemptsExceededError(updated.id, updated.attempt_count, error)
                self._finish(updated, DeliveryStatus.FAILED, error=failure.message)
                continue
            await asyncio.sleep(self._retry_delay)

        if delivered:
            logger.info(f"Drained {delivered} queued message(s)")
        return delivered

    def purge_stale(self) -> int:
        """
        Drop queued messages whose OTP code expired or that waited too long.

        Returns:
            Number of messages dropped
        """
        now = self._clock()
        in_flight = self._in_flight

        def _stale(message: QueuedMessage) -> bool:
            if message.id == in_flight:
                return False
            age = (now - message.enqueued_at).total_seconds()
            return message.is_expired(now) or age > self._max_age

        dropped = self.queue.purge(_stale)
        for message in dropped:
            reason = (
                "expired before delivery"
                if message.is_expired(now)
                else f"queued longer than {self._max_age:.0f}s"
            )
            self._finish(message, DeliveryStatus.FAILED, error=reason)
        return len(dropped)

    def _finish(
        self,
        message: QueuedMessage,
        status: DeliveryStatus,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> DeliveryOutcome:
        outcome = DeliveryOutcome(
            message_id=message.id,
            status=status,
            target=message.target,
            kind=message.kind,
            attempts=message.attempt_count if attempts is None else attempts,
            error=error,
            at=self._clock(),
        )

        if status is DeliveryStatus.DELIVERED:
            logger.info(
                f"✅ Delivered {message.kind.value} {message.id} to {mask_phone(message.target)}"
            )
        elif message.best_effort:
            logger.warning(f"Dropped best-effort message {message.id}: {error}")
        else:
            logger.error(
                f"❌ Delivery of {message.kind.value} {message.id} to "
                f"{mask_phone(message.target)} failed: {error}"
            )

        self._record(outcome)
        return outcome

    def _record(self, outcome: DeliveryOutcome) -> None:
        self._history[outcome.message_id] = outcome
        while len(self._history) > Queue.OUTCOME_HISTORY:
            self._history.popitem(last=False)

        future = self._pending.pop(outcome.message_id, None)
        if future is not None and not future.done():
            future.set_result(outcome)

        for listener in list(self._listeners):
            try:
                result = listener(outcome)
            except Exception as e:
                logger.error(f"Outcome listener {listener!r} failed: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_tasks.discard)

    def _queued_outcome(self, message_id: str, error: Optional[str] = None) -> DeliveryOutcome:
        message = self.queue.get(message_id)
        if message is None:
            return DeliveryOutcome(message_id=message_id, status=DeliveryStatus.QUEUED, target="")
        return DeliveryOutcome(
            message_id=message.id,
            status=DeliveryStatus.QUEUED,
            target=message.target,
            kind=message.kind,
            attempts=message.attempt_count,
            error=error or message.last_error,
            at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    def _on_supervisor_event(self, event: SupervisorEvent) -> None:
        if (
            event.type is SupervisorEventType.STATE_CHANGED
            and event.state is ConnectionState.READY
        ):
            self._wake.set()

    async def _drain_loop(self) -> None:
        while self._running:
            await self._wake.wait()
            self._wake.clear()
            try:
                await self.drain_queue()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Queue drain error: {e}", exc_info=True)

    async def _maintenance_loop(self) -> None:
        last_sweep = time.monotonic()
        while self._running:
            await asyncio.sleep(self._poll_interval)
            try:
                self.purge_stale()
                if time.monotonic() - last_sweep >= self._sweep_interval:
                    self.otp_store.sweep_expired()
                    last_sweep = time.monotonic()
                if self.supervisor.current_state() is ConnectionState.READY and len(self.queue):
                    self._wake.set()
            except Exception as e:
                logger.error(f"Delivery maintenance error: {e}", exc_info=True)
