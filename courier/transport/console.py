"""Development transport that logs every send instead of delivering it."""

import asyncio
import uuid
from typing import Optional

from loguru import logger

from courier.utils.masking import mask_phone

from .base import SendReceipt, Transport, TransportEvent, TransportEventHandler


class ConsoleTransport(Transport):
    """
    Transport for local development.

    Connects instantly (authenticated and ready), never drops, and writes
    each outgoing message to the log. OTP bodies are logged verbatim so a
    developer can complete signup flows without a paired device.
    """

    def __init__(self, latency: float = 0.0):
        self._handler: Optional[TransportEventHandler] = None
        self._connected = False
        self._latency = latency

    @property
    def name(self) -> str:
        return "console"

    def set_event_handler(self, handler: Optional[TransportEventHandler]) -> None:
        self._handler = handler

    def _emit(self, event: TransportEvent) -> None:
        if self._handler is not None:
            self._handler(event)

    async def connect(self, credential: Optional[bytes]) -> None:
        self._connected = True
        logger.info("Console transport connected")
        self._emit(TransportEvent.authenticated(credential or b"console-session"))
        self._emit(TransportEvent.ready())

    async def disconnect(self) -> None:
        self._connected = False

    async def _deliver(self, target: str, summary: str) -> SendReceipt:
        if not self._connected:
            raise ConnectionError("console transport is not connected")
        if self._latency:
            await asyncio.sleep(self._latency)
        message_id = uuid.uuid4().hex
        logger.info(f"[console] -> {mask_phone(target)}: {summary}")
        return SendReceipt(message_id=message_id)

    async def send_text(self, target: str, body: str) -> SendReceipt:
        return await self._deliver(target, body)

    async def send_document(
        self,
        target: str,
        data: bytes,
        filename: str,
        caption: Optional[str] = None,
        mimetype: str = "application/pdf",
    ) -> SendReceipt:
        return await self._deliver(
            target, f"document {filename} ({len(data)} bytes, {mimetype}) {caption or ''}".strip()
        )

    async def ping(self) -> None:
        if not self._connected:
            raise ConnectionError("console transport is not connected")


def create_transport() -> Transport:
    """Factory referenced by the default TRANSPORT setting."""
    return ConsoleTransport()
