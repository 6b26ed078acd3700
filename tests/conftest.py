"""Pytest configuration and common fixtures."""

import asyncio
import os
import sys
import warnings
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional, Tuple

from dotenv import load_dotenv

# Try to load test-specific environment file if it exists
test_env_file = Path(__file__).parent / ".env.test"
if test_env_file.exists():
    load_dotenv(test_env_file)

# Set before any courier import so the settings singleton never sees production defaults
os.environ.setdefault("ENV", "testing")

from cryptography.fernet import Fernet

if not os.getenv("ENCRYPTION_KEY"):
    os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
import pytest_asyncio

from courier.core.infra.backoff import BackoffPolicy
from courier.services.connection import ConnectionSupervisor
from courier.services.credentials import MemoryCredentialStore
from courier.services.delivery import DeliveryCoordinator, DeliveryQueue
from courier.services.otp import OTPSessionStore
from courier.transport.base import (
    DisconnectReason,
    SendReceipt,
    Transport,
    TransportEvent,
    TransportEventHandler,
)


def pytest_configure(config):
    """Configure pytest environment before tests run."""
    warnings.filterwarnings("ignore", message="coroutine.*was never awaited")


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Automatically set up test environment for all tests."""
    monkeypatch.setenv("ENCRYPTION_KEY", Fernet.generate_key().decode())
    monkeypatch.setenv("ENV", "testing")
    monkeypatch.setenv("OTP_RATE_LIMIT", "1000/minute")

    # Reset settings singleton so each test gets fresh settings
    from courier.core.config import reset_settings

    reset_settings()
    yield
    reset_settings()


class FakeTransport(Transport):
    """
    Scriptable in-memory transport.

    ``connect`` resumes when given a credential and asks for pairing when
    not, unless ``connect_mode`` says otherwise:
        "auto"   - resume with credential, pairing code without
        "pair"   - always offer a pairing code
        "silent" - emit nothing (exercises the connect watchdog)
        "error"  - raise ``connect_error``

    Setting ``disconnect_event`` makes ``disconnect`` report its own close.
    """

    def __init__(self):
        self._handler: Optional[TransportEventHandler] = None
        self.connect_mode = "auto"
        self.connect_error: Exception = ConnectionError("connect refused")
        self.connect_delay = 0.0
        self.pairing_code = "ABCD-1234"
        self.connect_calls: List[Optional[bytes]] = []
        self.disconnect_calls = 0
        self.disconnect_event: Optional[DisconnectReason] = None
        self.in_flight_connects = 0
        self.max_concurrent_connects = 0
        self.sent: List[Tuple[str, str, object]] = []
        self.send_errors: Deque[Exception] = deque()
        self.send_delay = 0.0
        self.ping_error: Optional[Exception] = None
        self.ping_delay = 0.0
        self.ping_calls = 0

    @property
    def name(self) -> str:
        return "fake"

    def set_event_handler(self, handler: Optional[TransportEventHandler]) -> None:
        self._handler = handler

    def emit(self, event: TransportEvent) -> None:
        if self._handler is not None:
            self._handler(event)

    def accept_pairing(self, credential: bytes = b"paired-credential") -> None:
        self.emit(TransportEvent.authenticated(credential))
        self.emit(TransportEvent.ready())

    def drop(self, reason: DisconnectReason = DisconnectReason.CONNECTION_LOST) -> None:
        self.emit(TransportEvent.disconnected(reason, "dropped by test"))

    async def connect(self, credential: Optional[bytes]) -> None:
        self.connect_calls.append(credential)
        self.in_flight_connects += 1
        self.max_concurrent_connects = max(self.max_concurrent_connects, self.in_flight_connects)
        try:
            if self.connect_delay:
                await asyncio.sleep(self.connect_delay)
            if self.connect_mode == "error":
                raise self.connect_error
            if self.connect_mode == "silent":
                return
            if self.connect_mode == "pair" or credential is None:
                self.emit(TransportEvent.pairing(self.pairing_code))
                return
            self.emit(TransportEvent.authenticated(credential))
            self.emit(TransportEvent.ready())
        finally:
            self.in_flight_connects -= 1

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnect_event is not None:
            # Some libraries report their own close while tearing down
            self.emit(TransportEvent.disconnected(self.disconnect_event, "closed locally"))

    async def _send(self, target: str, kind: str, payload: object) -> SendReceipt:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_errors:
            raise self.send_errors.popleft()
        self.sent.append((target, kind, payload))
        return SendReceipt(message_id=f"msg-{len(self.sent)}")

    async def send_text(self, target: str, body: str) -> SendReceipt:
        return await self._send(target, "text", body)

    async def send_document(
        self,
        target: str,
        data: bytes,
        filename: str,
        caption: Optional[str] = None,
        mimetype: str = "application/pdf",
    ) -> SendReceipt:
        return await self._send(target, "document", (data, filename, caption))

    async def ping(self) -> None:
        self.ping_calls += 1
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
        if self.ping_error is not None:
            raise self.ping_error


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return wait_for_condition


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def transport_factory() -> Callable[[], FakeTransport]:
    """Build extra transports for tests that simulate a process restart."""
    return FakeTransport


@pytest.fixture
def credential_store() -> MemoryCredentialStore:
    return MemoryCredentialStore(b"stored-credential")


@pytest.fixture
def zero_backoff() -> BackoffPolicy:
    """Immediate reconnects so state machines run without sleeping."""
    return BackoffPolicy(base_delay=0.0, max_delay=0.0, jitter=0.0, max_attempts=3)


@pytest_asyncio.fixture
async def supervisor(fake_transport, credential_store, zero_backoff):
    sup = ConnectionSupervisor(
        fake_transport,
        credential_store,
        policy=zero_backoff,
        connect_timeout=1.0,
        send_timeout=0.5,
        stop_timeout=0.5,
    )
    yield sup
    await sup.close()


@pytest_asyncio.fixture
async def coordinator(supervisor):
    coord = DeliveryCoordinator(
        supervisor,
        otp_store=OTPSessionStore(),
        queue=DeliveryQueue(max_size=10),
        max_attempts=3,
        retry_delay=0.0,
        poll_interval=0.05,
    )
    yield coord
    await coord.stop()
