"""Tests for the connection supervisor state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from courier.core.exceptions import (
    MessageRejectedError,
    NotConnectedError,
    TransientTransportError,
)
from courier.core.infra.backoff import BackoffPolicy
from courier.services.connection import (
    ConnectionState,
    ConnectionSupervisor,
    SupervisorEventType,
)
from courier.services.credentials import CredentialStore, MemoryCredentialStore
from courier.transport.base import DisconnectReason, DocumentPayload, TextPayload, TransportEvent

READY = ConnectionState.READY
DISCONNECTED = ConnectionState.DISCONNECTED


def make_supervisor(transport, store, policy=None, **kwargs):
    kwargs.setdefault("connect_timeout", 1.0)
    kwargs.setdefault("send_timeout", 0.5)
    kwargs.setdefault("stop_timeout", 0.5)
    return ConnectionSupervisor(
        transport,
        store,
        policy=policy or BackoffPolicy(base_delay=0.0, max_delay=0.0, max_attempts=3),
        **kwargs,
    )


def record_connect_delays(supervisor):
    """Collect the backoff delay in force at every transition to CONNECTING."""
    delays = []

    def _record(event):
        if (
            event.type is SupervisorEventType.STATE_CHANGED
            and event.state is ConnectionState.CONNECTING
        ):
            delays.append(supervisor.snapshot().reconnect_delay)

    supervisor.on_event(_record)
    return delays


class TestStart:
    """Test starting and resuming a session."""

    @pytest.mark.asyncio
    async def test_resume_with_stored_credential(self, supervisor, fake_transport):
        await supervisor.start()
        snapshot = await supervisor.wait_for_state(READY, timeout=2)

        assert fake_transport.connect_calls == [b"stored-credential"]
        assert snapshot.requires_pairing is False
        assert snapshot.reconnect_attempt == 0
        assert snapshot.connected_since is not None
        assert snapshot.has_credential

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, supervisor, fake_transport):
        fake_transport.connect_delay = 0.05

        await asyncio.gather(supervisor.start(), supervisor.start())
        await supervisor.wait_for_state(READY, timeout=2)
        await supervisor.start()

        assert len(fake_transport.connect_calls) == 1
        assert fake_transport.max_concurrent_connects == 1

    @pytest.mark.asyncio
    async def test_state_events_in_order(self, supervisor):
        states = []
        supervisor.on_event(
            lambda ev: states.append(ev.state) if ev.type is SupervisorEventType.STATE_CHANGED else None
        )

        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.AUTHENTICATED,
            ConnectionState.READY,
        ]

    @pytest.mark.asyncio
    async def test_async_listener_is_scheduled(self, supervisor, wait_until):
        seen = []

        async def listener(event):
            seen.append(event.type)

        supervisor.on_event(listener)
        await supervisor.start()

        await wait_until(lambda: SupervisorEventType.STATE_CHANGED in seen)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_state_machine(self, supervisor):
        def broken(event):
            raise RuntimeError("listener bug")

        supervisor.on_event(broken)
        await supervisor.start()

        await supervisor.wait_for_state(READY, timeout=2)


class TestPairing:
    """Test the pairing flow."""

    @pytest.mark.asyncio
    async def test_pairing_code_then_accept(self, fake_transport, wait_until):
        store = MemoryCredentialStore()
        supervisor = make_supervisor(fake_transport, store)
        codes = []
        supervisor.on_event(
            lambda ev: codes.append(ev.pairing_code)
            if ev.type is SupervisorEventType.PAIRING_CODE
            else None
        )
        try:
            await supervisor.start()
            snapshot = await supervisor.wait_for_state(ConnectionState.AWAITING_PAIRING, timeout=2)

            assert snapshot.requires_pairing
            assert snapshot.pairing_code == "ABCD-1234"
            assert codes == ["ABCD-1234"]
            assert fake_transport.connect_calls == [None]

            fake_transport.accept_pairing(b"paired-credential")
            snapshot = await supervisor.wait_for_state(READY, timeout=2)

            assert store.load() == b"paired-credential"
            assert snapshot.pairing_code is None
            assert snapshot.requires_pairing is False
        finally:
            await supervisor.close()

    @pytest.mark.asyncio
    async def test_pairing_is_not_subject_to_connect_timeout(self, fake_transport):
        supervisor = make_supervisor(fake_transport, MemoryCredentialStore(), connect_timeout=0.05)
        try:
            await supervisor.start()
            await supervisor.wait_for_state(ConnectionState.AWAITING_PAIRING, timeout=2)
            await asyncio.sleep(0.2)

            assert supervisor.current_state() is ConnectionState.AWAITING_PAIRING
            assert len(fake_transport.connect_calls) == 1
        finally:
            await supervisor.close()

    @pytest.mark.asyncio
    async def test_credentials_updated_is_persisted(self, supervisor, fake_transport, credential_store, wait_until):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        fake_transport.emit(TransportEvent.credentials_updated(b"rotated"))

        await wait_until(lambda: credential_store.load() == b"rotated")

    @pytest.mark.asyncio
    async def test_reset_session_forgets_credential(self, supervisor, fake_transport, credential_store):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        await supervisor.reset_session()
        snapshot = await supervisor.wait_for_state(ConnectionState.AWAITING_PAIRING, timeout=2)

        assert credential_store.load() is None
        assert fake_transport.connect_calls == [b"stored-credential", None]
        assert fake_transport.disconnect_calls >= 1
        assert snapshot.pairing_code == "ABCD-1234"


class TestDisconnects:
    """Test disconnect classification and reconnect scheduling."""

    @pytest.mark.asyncio
    async def test_logged_out_requires_pairing_without_retry(
        self, supervisor, fake_transport, credential_store, wait_until
    ):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        fake_transport.drop(DisconnectReason.LOGGED_OUT)
        await wait_until(lambda: supervisor.current_state() is DISCONNECTED)
        await asyncio.sleep(0.05)

        snapshot = supervisor.snapshot()
        assert snapshot.requires_pairing
        assert snapshot.reconnect_scheduled is False
        assert snapshot.last_disconnect_reason is DisconnectReason.LOGGED_OUT
        assert credential_store.load() is None
        assert len(fake_transport.connect_calls) == 1

        await supervisor.start()
        await supervisor.wait_for_state(ConnectionState.AWAITING_PAIRING, timeout=2)
        assert fake_transport.connect_calls[-1] is None

    @pytest.mark.asyncio
    async def test_transient_drop_reconnects_and_resets_attempts(
        self, supervisor, fake_transport, wait_until
    ):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        fake_transport.drop(DisconnectReason.CONNECTION_LOST)
        await wait_until(
            lambda: len(fake_transport.connect_calls) == 2 and supervisor.current_state() is READY
        )

        snapshot = supervisor.snapshot()
        assert snapshot.reconnect_attempt == 0
        assert snapshot.last_disconnect_reason is DisconnectReason.CONNECTION_LOST
        assert fake_transport.connect_calls[1] == b"stored-credential"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, supervisor, fake_transport, wait_until):
        fake_transport.connect_mode = "error"

        await supervisor.start()
        await wait_until(lambda: supervisor.snapshot().gave_up)

        assert len(fake_transport.connect_calls) == 4
        assert supervisor.current_state() is DISCONNECTED
        assert supervisor.snapshot().reconnect_scheduled is False

    @pytest.mark.asyncio
    async def test_start_after_giving_up_resets_budget(self, supervisor, fake_transport, wait_until):
        fake_transport.connect_mode = "error"
        await supervisor.start()
        await wait_until(lambda: supervisor.snapshot().gave_up)

        fake_transport.connect_mode = "auto"
        await supervisor.start()
        snapshot = await supervisor.wait_for_state(READY, timeout=2)

        assert snapshot.gave_up is False

    @pytest.mark.asyncio
    async def test_connect_watchdog_times_out(self, fake_transport, credential_store, wait_until):
        fake_transport.connect_mode = "silent"
        supervisor = make_supervisor(fake_transport, credential_store, connect_timeout=0.05)
        try:
            await supervisor.start()
            await wait_until(lambda: supervisor.snapshot().gave_up)

            snapshot = supervisor.snapshot()
            assert snapshot.last_disconnect_reason is DisconnectReason.TIMED_OUT
            assert len(fake_transport.connect_calls) == 4
            assert fake_transport.disconnect_calls >= 4
        finally:
            await supervisor.close()

    @pytest.mark.asyncio
    async def test_rate_limited_drop_uses_floor(self, fake_transport, credential_store, wait_until):
        policy = BackoffPolicy(base_delay=1.0, max_delay=60.0, rate_limit_floor=30.0)
        supervisor = make_supervisor(fake_transport, credential_store, policy=policy)
        try:
            await supervisor.start()
            await supervisor.wait_for_state(READY, timeout=2)

            fake_transport.drop(DisconnectReason.RATE_LIMITED)
            await wait_until(lambda: supervisor.snapshot().reconnect_scheduled)

            assert supervisor.snapshot().reconnect_delay == 30.0
        finally:
            await supervisor.close()

    @pytest.mark.asyncio
    async def test_rate_limit_floor_holds_for_failure_streak(
        self, fake_transport, credential_store, wait_until
    ):
        policy = BackoffPolicy(
            base_delay=0.01, max_delay=1.0, rate_limit_floor=0.05, max_attempts=4
        )
        supervisor = make_supervisor(fake_transport, credential_store, policy=policy)
        delays = record_connect_delays(supervisor)
        try:
            await supervisor.start()
            await supervisor.wait_for_state(READY, timeout=2)
            fake_transport.connect_mode = "error"

            fake_transport.drop(DisconnectReason.RATE_LIMITED)
            await wait_until(lambda: supervisor.snapshot().gave_up)

            reconnect_delays = delays[1:]
            assert len(reconnect_delays) == 4
            assert min(reconnect_delays) >= 0.05
            assert reconnect_delays == sorted(reconnect_delays)
        finally:
            await supervisor.close()

    @pytest.mark.asyncio
    async def test_rate_limit_floor_clears_once_ready(
        self, fake_transport, credential_store, wait_until
    ):
        policy = BackoffPolicy(base_delay=0.01, max_delay=1.0, rate_limit_floor=0.05)
        supervisor = make_supervisor(fake_transport, credential_store, policy=policy)
        delays = record_connect_delays(supervisor)
        try:
            await supervisor.start()
            await supervisor.wait_for_state(READY, timeout=2)

            fake_transport.drop(DisconnectReason.RATE_LIMITED)
            await wait_until(
                lambda: len(fake_transport.connect_calls) == 2
                and supervisor.current_state() is READY
            )
            fake_transport.drop(DisconnectReason.CONNECTION_LOST)
            await wait_until(
                lambda: len(fake_transport.connect_calls) == 3
                and supervisor.current_state() is READY
            )

            assert delays == [None, 0.05, 0.01]
        finally:
            await supervisor.close()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(self, fake_transport, credential_store, wait_until):
        policy = BackoffPolicy(base_delay=10.0, max_delay=10.0, multiplier=1.0)
        supervisor = make_supervisor(fake_transport, credential_store, policy=policy)
        try:
            await supervisor.start()
            await supervisor.wait_for_state(READY, timeout=2)
            fake_transport.drop()
            await wait_until(lambda: supervisor.snapshot().reconnect_scheduled)

            snapshot = await supervisor.stop()

            assert snapshot.state is DISCONNECTED
            assert snapshot.reconnect_scheduled is False
            assert len(fake_transport.connect_calls) == 1
        finally:
            await supervisor.close()

    @pytest.mark.asyncio
    async def test_stop_when_ready(self, supervisor, fake_transport):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        snapshot = await supervisor.stop()

        assert snapshot.state is DISCONNECTED
        assert snapshot.connected_since is None
        assert fake_transport.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_events_after_stop_are_ignored(self, supervisor, fake_transport):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)
        await supervisor.stop()

        fake_transport.emit(TransportEvent.ready())
        await asyncio.sleep(0.05)

        assert supervisor.current_state() is DISCONNECTED

    @pytest.mark.asyncio
    async def test_restart(self, supervisor, fake_transport):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        await supervisor.restart(detail="zombie")
        await supervisor.wait_for_state(READY, timeout=2)

        assert len(fake_transport.connect_calls) == 2
        assert fake_transport.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_close_reported_during_restart_is_not_a_drop(self, supervisor, fake_transport):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)
        fake_transport.disconnect_event = DisconnectReason.CONNECTION_LOST

        await supervisor.restart(detail="stale session")
        await supervisor.wait_for_state(READY, timeout=2)
        await asyncio.sleep(0.05)

        snapshot = supervisor.snapshot()
        assert snapshot.state is READY
        assert snapshot.last_disconnect_reason is None
        assert len(fake_transport.connect_calls) == 2
        assert fake_transport.max_concurrent_connects == 1

    @pytest.mark.asyncio
    async def test_close_reported_during_reset_is_not_a_drop(self, supervisor, fake_transport):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)
        fake_transport.disconnect_event = DisconnectReason.CONNECTION_LOST

        await supervisor.reset_session()
        await supervisor.wait_for_state(ConnectionState.AWAITING_PAIRING, timeout=2)
        await asyncio.sleep(0.05)

        assert supervisor.current_state() is ConnectionState.AWAITING_PAIRING
        assert fake_transport.connect_calls == [b"stored-credential", None]


class TestSend:
    """Test the send gate and failure classification."""

    @pytest.mark.asyncio
    async def test_send_requires_ready(self, supervisor):
        with pytest.raises(NotConnectedError) as exc_info:
            await supervisor.send("9647701234567", TextPayload("hi"))

        assert exc_info.value.details["state"] == "disconnected"

    @pytest.mark.asyncio
    async def test_send_text_and_document(self, supervisor, fake_transport):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        await supervisor.send("9647701234567", TextPayload("hi"))
        await supervisor.send(
            "9647701234567", DocumentPayload(data=b"%PDF", filename="a.pdf", caption="c")
        )

        assert fake_transport.sent == [
            ("9647701234567", "text", "hi"),
            ("9647701234567", "document", (b"%PDF", "a.pdf", "c")),
        ]

    @pytest.mark.asyncio
    async def test_message_level_failure_keeps_session(self, supervisor, fake_transport):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)
        fake_transport.send_errors.append(ValueError("bad jid"))

        with pytest.raises(MessageRejectedError):
            await supervisor.send("9647701234567", TextPayload("hi"))
        await asyncio.sleep(0.05)

        assert supervisor.current_state() is READY
        assert len(fake_transport.connect_calls) == 1

    @pytest.mark.asyncio
    async def test_connection_failure_triggers_reconnect(
        self, supervisor, fake_transport, wait_until
    ):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)
        fake_transport.send_errors.append(ConnectionResetError("socket closed"))

        with pytest.raises(TransientTransportError):
            await supervisor.send("9647701234567", TextPayload("hi"))

        await wait_until(
            lambda: len(fake_transport.connect_calls) == 2 and supervisor.current_state() is READY
        )
        assert supervisor.snapshot().last_disconnect_reason is DisconnectReason.CONNECTION_LOST

    @pytest.mark.asyncio
    async def test_send_timeout_is_reported_as_drop(self, supervisor, fake_transport, wait_until):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)
        fake_transport.send_delay = 1.0

        with pytest.raises(TransientTransportError):
            await supervisor.send("9647701234567", TextPayload("hi"), timeout=0.05)

        await wait_until(lambda: len(fake_transport.connect_calls) == 2)
        assert supervisor.snapshot().last_disconnect_reason is DisconnectReason.TIMED_OUT

    @pytest.mark.asyncio
    async def test_successful_send_emits_activity(self, supervisor):
        activity = []
        supervisor.on_event(
            lambda ev: activity.append(ev) if ev.type is SupervisorEventType.ACTIVITY else None
        )
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        await supervisor.send("9647701234567", TextPayload("hi"))

        assert len(activity) == 1


class TestPing:
    """Test the tracked keep-alive probe."""

    @pytest.mark.asyncio
    async def test_ping_requires_ready(self, supervisor):
        with pytest.raises(NotConnectedError):
            await supervisor.ping(timeout=0.1)

    @pytest.mark.asyncio
    async def test_stop_cancels_probe(self, supervisor, fake_transport, wait_until):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)
        fake_transport.ping_delay = 5.0

        probe = asyncio.create_task(supervisor.ping(timeout=10))
        await wait_until(lambda: fake_transport.ping_calls == 1)
        await supervisor.stop()

        with pytest.raises(NotConnectedError):
            await asyncio.wait_for(probe, timeout=1)

    @pytest.mark.asyncio
    async def test_ping_timeout(self, supervisor, fake_transport):
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)
        fake_transport.ping_delay = 1.0

        with pytest.raises(asyncio.TimeoutError):
            await supervisor.ping(timeout=0.05)


class TestCredentialStoreFailures:
    """Test that storage errors never break the state machine."""

    @pytest.mark.asyncio
    async def test_save_failure_still_reaches_ready(self, fake_transport):
        store = MagicMock(spec=CredentialStore)
        store.load.return_value = None
        store.save.side_effect = OSError("disk full")
        supervisor = make_supervisor(fake_transport, store)
        try:
            await supervisor.start()
            await supervisor.wait_for_state(ConnectionState.AWAITING_PAIRING, timeout=2)

            fake_transport.accept_pairing(b"fresh")
            await supervisor.wait_for_state(READY, timeout=2)

            store.save.assert_called_once_with(b"fresh")
            assert supervisor.snapshot().has_credential
        finally:
            await supervisor.close()

    @pytest.mark.asyncio
    async def test_credential_loaded_once(self, fake_transport, wait_until):
        store = MagicMock(spec=CredentialStore)
        store.load.return_value = b"cred"
        supervisor = make_supervisor(fake_transport, store)
        try:
            await supervisor.start()
            await supervisor.wait_for_state(READY, timeout=2)
            fake_transport.drop()
            await wait_until(lambda: len(fake_transport.connect_calls) == 2)

            store.load.assert_called_once()
            assert fake_transport.connect_calls == [b"cred", b"cred"]
        finally:
            await supervisor.close()

    @pytest.mark.asyncio
    async def test_transport_disconnect_error_is_tolerated(self, supervisor, fake_transport):
        fake_transport.disconnect = AsyncMock(side_effect=RuntimeError("already closed"))
        await supervisor.start()
        await supervisor.wait_for_state(READY, timeout=2)

        snapshot = await supervisor.stop()

        assert snapshot.state is DISCONNECTED
        fake_transport.disconnect.assert_awaited_once()
