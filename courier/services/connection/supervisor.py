"""Connection supervisor: the single owner of the transport session.

All lifecycle changes go through one inbox processed by one worker task:
public commands (start/stop/restart/reset), transport events and link
failure reports from senders or the health monitor. Nothing else writes
the connection state.
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Set

from loguru import logger

from courier.constants import Timeouts
from courier.core.exceptions import (
    AuthenticationRequiredError,
    NotConnectedError,
    RateLimitedError,
    TransportError,
    classify_send_error,
)
from courier.core.infra.backoff import BackoffPolicy
from courier.services.credentials.store import CredentialStore
from courier.transport.base import (
    DisconnectReason,
    DocumentPayload,
    Payload,
    SendReceipt,
    Transport,
    TransportEvent,
    TransportEventType,
)
from courier.utils.masking import mask_pairing_code, mask_phone

from .state import (
    ConnectionSnapshot,
    ConnectionState,
    PairingMaterial,
    SupervisorEvent,
    SupervisorEventType,
)

SupervisorListener = Callable[[SupervisorEvent], object]


class _Command(Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    RESET = "reset"
    RECONNECT = "reconnect"
    CONNECT_TIMEOUT = "connect_timeout"
    LINK_FAILURE = "link_failure"


@dataclass
class _Envelope:
    command: Optional[_Command] = None
    event: Optional[TransportEvent] = None
    reason: Optional[DisconnectReason] = None
    detail: str = ""
    token: int = 0
    generation: int = 0
    done: Optional["asyncio.Future[ConnectionSnapshot]"] = None


def _reason_for_error(error: BaseException) -> DisconnectReason:
    if isinstance(error, AuthenticationRequiredError):
        return DisconnectReason.CREDENTIAL_REJECTED
    if isinstance(error, RateLimitedError):
        return DisconnectReason.RATE_LIMITED
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return DisconnectReason.TIMED_OUT
    return DisconnectReason.CONNECTION_LOST


class ConnectionSupervisor:
    """
    State machine owning the transport lifecycle.

    Example:
        supervisor = ConnectionSupervisor(transport, FileCredentialStore(path))
        supervisor.on_event(lambda ev: print(ev.state))
        await supervisor.start()
        await supervisor.wait_for_state(ConnectionState.READY, timeout=60)
        await supervisor.send("9647701234567", TextPayload("hello"))
        await supervisor.close()
    """

    def __init__(
        self,
        transport: Transport,
        credential_store: CredentialStore,
        policy: Optional[BackoffPolicy] = None,
        connect_timeout: float = Timeouts.CONNECT,
        send_timeout: float = Timeouts.SEND,
        stop_timeout: float = Timeouts.STOP,
    ):
        """
        Initialize connection supervisor.

        Args:
            transport: The only transport instance this process uses
            credential_store: Where the session credential lives
            policy: Reconnect backoff policy
            connect_timeout: Seconds to wait for authentication or a pairing code
            send_timeout: Default per-send timeout
            stop_timeout: Seconds allowed for transport teardown
        """
        self._transport = transport
        self._credentials = credential_store
        self._policy = policy or BackoffPolicy.standard()
        self._connect_timeout = connect_timeout
        self._send_timeout = send_timeout
        self._stop_timeout = stop_timeout

        self._state = ConnectionState.DISCONNECTED
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional["asyncio.Queue[_Envelope]"] = None
        self._worker: Optional[asyncio.Task] = None

        self._listeners: List[SupervisorListener] = []
        self._listener_tasks: Set[asyncio.Task] = set()

        self._credential: Optional[bytes] = None
        self._credential_loaded = False
        self._requires_pairing = False
        self._pairing: Optional[PairingMaterial] = None

        self._attempt = 0
        self._last_delay: Optional[float] = None
        self._rate_limited = False
        self._gave_up = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_token = 0
        self._watchdog_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._probe_task: Optional[asyncio.Task] = None

        self._last_reason: Optional[DisconnectReason] = None
        self._last_error: Optional[str] = None
        self._connected_since: Optional[datetime] = None

        transport.set_event_handler(self._on_transport_event)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def transport_name(self) -> str:
        return self._transport.name

    def current_state(self) -> ConnectionState:
        """Get the current state (read-only snapshot)."""
        return self._state

    def snapshot(self) -> ConnectionSnapshot:
        """Get a full read-only view of the connection."""
        if self._credential_loaded:
            has_credential = self._credential is not None
        else:
            has_credential = self._credentials.exists()
        return ConnectionSnapshot(
            state=self._state,
            requires_pairing=self._requires_pairing,
            pairing=self._pairing,
            reconnect_attempt=self._attempt,
            reconnect_delay=self._last_delay,
            reconnect_scheduled=self._reconnect_task is not None,
            gave_up=self._gave_up,
            has_credential=has_credential,
            last_disconnect_reason=self._last_reason,
            last_error=self._last_error,
            connected_since=self._connected_since,
        )

    def on_event(self, listener: SupervisorListener) -> Callable[[], None]:
        """
        Subscribe to state transitions, pairing codes and activity.

        Listeners run on the supervisor's worker; coroutine results are
        scheduled as tasks so a slow listener never stalls the state machine.

        Args:
            listener: Callable receiving SupervisorEvent

        Returns:
            Function that removes the subscription
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_for_state(
        self, state: ConnectionState, timeout: Optional[float] = None
    ) -> ConnectionSnapshot:
        """
        Wait until the supervisor enters ``state``.

        Raises:
            asyncio.TimeoutError: If the state is not reached in time
        """
        if self._state is state:
            return self.snapshot()

        reached: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()

        def _listener(event: SupervisorEvent) -> None:
            if (
                event.type is SupervisorEventType.STATE_CHANGED
                and event.state is state
                and not reached.done()
            ):
                reached.set_result(None)

        unsubscribe = self.on_event(_listener)
        try:
            await asyncio.wait_for(reached, timeout)
        finally:
            unsubscribe()
        return self.snapshot()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(self) -> ConnectionSnapshot:
        """Begin connecting. No-op while a connection attempt or session is active."""
        return await self._submit(_Command.START)

    async def stop(self) -> ConnectionSnapshot:
        """Close the session gracefully and cancel pending timers."""
        return await self._submit(_Command.STOP)

    async def restart(self, detail: str = "") -> ConnectionSnapshot:
        """Stop and start again (used for zombie connections)."""
        return await self._submit(_Command.RESTART, detail=detail)

    async def reset_session(self) -> ConnectionSnapshot:
        """Stop, forget the stored credential and start fresh to obtain a pairing code."""
        return await self._submit(_Command.RESET)

    async def report_link_failure(
        self,
        detail: str,
        reason: DisconnectReason = DisconnectReason.HEARTBEAT_FAILED,
    ) -> ConnectionSnapshot:
        """
        Treat an out-of-band failure exactly like a transport-reported drop.

        Used by the health monitor; has no effect unless a session is up.
        """
        return await self._submit(_Command.LINK_FAILURE, reason=reason, detail=detail)

    async def close(self) -> None:
        """Stop the session and the worker task."""
        if self._worker is None or self._worker.done():
            return
        await self.stop()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._inbox = None
        for task in list(self._listener_tasks):
            task.cancel()
        logger.info("Connection supervisor closed")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self, target: str, payload: Payload, timeout: Optional[float] = None
    ) -> SendReceipt:
        """
        Send one message on the live session.

        Fails fast when not Ready and never waits for a reconnect. A timeout
        or link-level error is reported to the state machine as a drop and
        re-raised as a TransportError.

        Args:
            target: Normalized recipient
            payload: Text or document payload
            timeout: Per-send timeout (defaults to send_timeout)

        Returns:
            SendReceipt from the transport

        Raises:
            NotConnectedError: If state is not READY
            TransportError: Connection-level failure
            MessageRejectedError: Message-level failure
        """
        if self._state is not ConnectionState.READY:
            raise NotConnectedError(state=self._state.value)

        timeout = timeout or self._send_timeout
        try:
            if isinstance(payload, DocumentPayload):
                coro = self._transport.send_document(
                    target, payload.data, payload.filename, payload.caption, payload.mimetype
                )
            else:
                coro = self._transport.send_text(target, payload.body)
            receipt = await asyncio.wait_for(coro, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_send_error(e)
            if isinstance(error, TransportError):
                logger.warning(
                    f"Send to {mask_phone(target)} failed at connection level: {error.message}"
                )
                self._post(
                    _Envelope(
                        command=_Command.LINK_FAILURE,
                        reason=_reason_for_error(e),
                        detail=f"send failed: {error.message}",
                    )
                )
            if error is e:
                raise
            raise error from e

        self._emit(SupervisorEvent(SupervisorEventType.ACTIVITY, state=self._state, detail="send"))
        return receipt

    async def ping(self, timeout: float) -> None:
        """
        Run one keep-alive probe through the transport.

        The probe is tracked so ``stop()`` can cancel it before teardown.

        Raises:
            NotConnectedError: If state is not READY
            Exception: Whatever the transport probe raised, or asyncio.TimeoutError
        """
        if self._state is not ConnectionState.READY:
            raise NotConnectedError(state=self._state.value)
        probe = asyncio.ensure_future(asyncio.wait_for(self._transport.ping(), timeout))
        self._probe_task = probe
        try:
            await asyncio.wait({probe})
        finally:
            self._probe_task = None
            if not probe.done():
                probe.cancel()
        if probe.cancelled():
            raise NotConnectedError("Probe cancelled by stop", state=self._state.value)
        probe.result()

    # ------------------------------------------------------------------
    # Inbox plumbing
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="connection-supervisor")

    async def _submit(self, command: _Command, **kwargs) -> ConnectionSnapshot:
        self._ensure_worker()
        done: "asyncio.Future[ConnectionSnapshot]" = asyncio.get_running_loop().create_future()
        self._post(_Envelope(command=command, done=done, **kwargs))
        return await done

    def _post(self, envelope: _Envelope) -> None:
        loop, inbox = self._loop, self._inbox
        if loop is None or inbox is None:
            logger.debug("Supervisor not running, dropping inbox message")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            inbox.put_nowait(envelope)
        else:
            # Transport callbacks may fire on a library thread
            loop.call_soon_threadsafe(inbox.put_nowait, envelope)

    def _on_transport_event(self, event: TransportEvent) -> None:
        self._post(_Envelope(event=event, generation=self._generation))

    async def _run(self) -> None:
        assert self._inbox is not None
        while True:
            envelope = await self._inbox.get()
            try:
                if envelope.event is not None:
                    if envelope.generation != self._generation:
                        # Raised by a session that has since been replaced
                        logger.debug(
                            f"Dropping stale transport {envelope.event.type.value} "
                            f"from session {envelope.generation}"
                        )
                        continue
                    await self._handle_transport_event(envelope.event)
                else:
                    await self._handle_command(envelope)
            except asyncio.CancelledError:
                if envelope.done is not None and not envelope.done.done():
                    envelope.done.cancel()
                raise
            except Exception as e:
                logger.exception(f"Connection supervisor failed handling {envelope}: {e}")
            if envelope.done is not None and not envelope.done.done():
                envelope.done.set_result(self.snapshot())

    # ------------------------------------------------------------------
    # Command handling (worker only)
    # ------------------------------------------------------------------

    async def _handle_command(self, envelope: _Envelope) -> None:
        command = envelope.command
        if command is _Command.START:
            await self._handle_start()
        elif command is _Command.STOP:
            await self._handle_stop()
        elif command is _Command.RESTART:
            logger.warning(f"Restarting transport session: {envelope.detail or 'requested'}")
            await self._handle_stop()
            await self._handle_start()
        elif command is _Command.RESET:
            logger.warning("Resetting transport session; stored credential will be removed")
            await self._handle_stop()
            self._forget_credential()
            self._requires_pairing = True
            await self._handle_start()
        elif command is _Command.RECONNECT:
            if envelope.token != self._reconnect_token:
                return
            self._reconnect_task = None
            if self._state is ConnectionState.DISCONNECTED:
                logger.info(f"Reconnect attempt {self._attempt}/{self._policy.max_attempts}")
                await self._connect()
        elif command is _Command.CONNECT_TIMEOUT:
            waiting = self._state in (ConnectionState.CONNECTING, ConnectionState.AUTHENTICATED)
            if envelope.token == self._generation and waiting:
                logger.warning(f"No transport response within {self._connect_timeout}s")
                await self._teardown_transport()
                await self._handle_disconnect(DisconnectReason.TIMED_OUT, "connect timeout")
        elif command is _Command.LINK_FAILURE:
            if self._state in (ConnectionState.READY, ConnectionState.AUTHENTICATED):
                await self._teardown_transport()
                await self._handle_disconnect(
                    envelope.reason or DisconnectReason.CONNECTION_LOST, envelope.detail
                )

    async def _handle_start(self) -> None:
        if self._state.is_active:
            logger.debug(f"start() ignored, connection already {self._state.value}")
            return

        self._cancel_reconnect()
        self._attempt = 0
        self._last_delay = None
        self._rate_limited = False
        self._gave_up = False

        if not self._credential_loaded:
            try:
                self._credential = self._credentials.load()
            except Exception as e:
                logger.error(f"Failed to load transport credential: {e}")
                self._credential = None
            self._credential_loaded = True
            logger.info(
                f"Transport credential {'found' if self._credential else 'not found'}, "
                f"{'resuming session' if self._credential else 'pairing will be required'}"
            )

        await self._connect()

    async def _handle_stop(self) -> None:
        self._cancel_reconnect()
        self._cancel_watchdog()
        if self._probe_task is not None:
            self._probe_task.cancel()

        if self._state is ConnectionState.DISCONNECTED:
            return

        self._set_state(ConnectionState.CLOSING)
        await self._teardown_transport()
        self._pairing = None
        self._connected_since = None
        self._attempt = 0
        self._set_state(ConnectionState.DISCONNECTED, detail="stopped")
        logger.info("Transport session stopped")

    async def _connect(self) -> None:
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        self._start_watchdog(generation)

        try:
            await asyncio.wait_for(
                self._transport.connect(self._credential), timeout=self._connect_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Transport connect failed: {type(e).__name__}: {e}")
            if self._generation != generation or self._state is not ConnectionState.CONNECTING:
                return
            self._cancel_watchdog()
            await self._teardown_transport()
            await self._handle_disconnect(_reason_for_error(e), str(e) or type(e).__name__)

    async def _teardown_transport(self) -> None:
        try:
            await asyncio.wait_for(self._transport.disconnect(), timeout=self._stop_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Transport disconnect raised {type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # Transport events (worker only)
    # ------------------------------------------------------------------

    async def _handle_transport_event(self, event: TransportEvent) -> None:
        kind = event.type

        if kind in (TransportEventType.ACTIVITY, TransportEventType.MESSAGE_ACK):
            if kind is TransportEventType.MESSAGE_ACK and not event.ok:
                logger.warning(f"Transport reported failed ack for {event.message_id}")
            self._emit(
                SupervisorEvent(SupervisorEventType.ACTIVITY, state=self._state, detail=kind.value)
            )
            return

        if kind is TransportEventType.CREDENTIALS_UPDATED:
            if event.credential and self._state is not ConnectionState.CLOSING:
                self._store_credential(event.credential)
            return

        if not self._state.is_active:
            logger.debug(f"Ignoring transport {kind.value} while {self._state.value}")
            return

        if kind is TransportEventType.PAIRING_CODE:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.AWAITING_PAIRING):
                self._handle_pairing_code(event.pairing_code or "")
        elif kind is TransportEventType.AUTHENTICATED:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.AWAITING_PAIRING):
                self._mark_authenticated(event.credential)
        elif kind is TransportEventType.READY:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.AWAITING_PAIRING):
                # Some transports go straight to ready on resume
                self._mark_authenticated(None)
            if self._state is ConnectionState.AUTHENTICATED:
                self._mark_ready()
        elif kind is TransportEventType.DISCONNECTED:
            await self._handle_disconnect(
                event.reason or DisconnectReason.UNKNOWN, event.detail or ""
            )

    def _handle_pairing_code(self, code: str) -> None:
        # Pairing waits for a human; the connect watchdog no longer applies
        self._cancel_watchdog()
        self._pairing = PairingMaterial(code=code)
        self._requires_pairing = True
        logger.warning(f"Pairing required, code available ({mask_pairing_code(code)})")
        self._set_state(ConnectionState.AWAITING_PAIRING)
        self._emit(
            SupervisorEvent(
                SupervisorEventType.PAIRING_CODE, state=self._state, pairing_code=code
            )
        )

    def _mark_authenticated(self, credential: Optional[bytes]) -> None:
        self._pairing = None
        self._requires_pairing = False
        if credential:
            self._store_credential(credential)
        self._set_state(ConnectionState.AUTHENTICATED)
        self._start_watchdog(self._generation)

    def _mark_ready(self) -> None:
        self._cancel_watchdog()
        self._attempt = 0
        self._last_delay = None
        self._rate_limited = False
        self._gave_up = False
        self._last_error = None
        self._connected_since = datetime.now(timezone.utc)
        self._set_state(ConnectionState.READY)
        logger.info(f"Transport '{self._transport.name}' ready for traffic")

    async def _handle_disconnect(self, reason: DisconnectReason, detail: str) -> None:
        self._cancel_watchdog()
        self._pairing = None
        self._connected_since = None
        self._last_reason = reason
        self._last_error = detail or None
        logger.warning(f"Transport disconnected: {reason.value} {detail}".rstrip())
        self._set_state(ConnectionState.DISCONNECTED, reason=reason, detail=detail)

        if reason.requires_pairing:
            self._requires_pairing = True
            self._forget_credential()
            logger.error("Transport session logged out; pairing required, call start() again")
            return

        self._schedule_reconnect(reason)

    def _schedule_reconnect(self, reason: DisconnectReason) -> None:
        if self._policy.exhausted(self._attempt):
            self._gave_up = True
            logger.error(
                f"Giving up after {self._attempt} reconnect attempts; call start() to retry"
            )
            return

        # The overload floor holds until the session is Ready again
        self._rate_limited = self._rate_limited or reason.is_rate_limit
        delay = self._policy.delay_for(self._attempt, rate_limited=self._rate_limited)
        self._attempt += 1
        self._last_delay = delay
        self._reconnect_token += 1
        token = self._reconnect_token
        logger.info(
            f"Reconnect {self._attempt}/{self._policy.max_attempts} scheduled in {delay:.1f}s"
        )
        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay, token))

    async def _reconnect_after(self, delay: float, token: int) -> None:
        await asyncio.sleep(delay)
        self._post(_Envelope(command=_Command.RECONNECT, token=token))

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    def _start_watchdog(self, generation: int) -> None:
        self._cancel_watchdog()
        self._watchdog_task = asyncio.create_task(self._watchdog(generation))

    async def _watchdog(self, generation: int) -> None:
        await asyncio.sleep(self._connect_timeout)
        self._post(_Envelope(command=_Command.CONNECT_TIMEOUT, token=generation))

    def _cancel_watchdog(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None

    # ------------------------------------------------------------------
    # Credential and listener helpers
    # ------------------------------------------------------------------

    def _store_credential(self, credential: bytes) -> None:
        self._credential = credential
        self._credential_loaded = True
        try:
            self._credentials.save(credential)
        except Exception as e:
            logger.error(f"Failed to persist transport credential: {e}")

    def _forget_credential(self) -> None:
        self._credential = None
        self._credential_loaded = True
        try:
            self._credentials.clear()
        except Exception as e:
            logger.error(f"Failed to clear transport credential: {e}")

    def _set_state(
        self,
        state: ConnectionState,
        reason: Optional[DisconnectReason] = None,
        detail: str = "",
    ) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        logger.info(f"Connection state: {previous.value} -> {state.value}")
        self._emit(
            SupervisorEvent(
                SupervisorEventType.STATE_CHANGED,
                state=state,
                previous=previous,
                reason=reason,
                detail=detail,
            )
        )

    def _emit(self, event: SupervisorEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception as e:
                logger.error(f"Supervisor listener {listener!r} failed: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_tasks.discard)
