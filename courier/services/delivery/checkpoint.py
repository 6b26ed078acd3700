"""Queue checkpoint so pending deliveries survive a restart."""

import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from courier.core.infra.retry import get_storage_retry

from .models import MessagePurpose, QueuedMessage


class QueueCheckpoint:
    """
    Encrypted JSON snapshot of the delivery queue.

    OTP messages are never written: their codes are secrets and they are
    useless after a restart because the session store is in memory.
    """

    def __init__(self, path: str, encryption_key: Optional[str] = None):
        self.path = Path(path)
        self._fernet = self._init_fernet(encryption_key or os.getenv("ENCRYPTION_KEY"))

    @staticmethod
    def _init_fernet(encryption_key: Optional[str]) -> Optional[Fernet]:
        if not encryption_key:
            logger.warning(
                "ENCRYPTION_KEY not set - queue checkpoint will NOT be encrypted. "
                "Set ENCRYPTION_KEY for secure checkpoint storage."
            )
            return None
        try:
            return Fernet(encryption_key.encode())
        except Exception as e:
            logger.error(f"Failed to initialize Fernet encryption: {e}")
            return None

    @get_storage_retry()
    def _write(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    @get_storage_retry()
    def _read(self) -> bytes:
        return self.path.read_bytes()

    def save(self, messages: List[QueuedMessage]) -> int:
        """
        Write the checkpoint, replacing any previous one.

        Returns:
            Number of messages written
        """
        kept = [m for m in messages if m.purpose is not MessagePurpose.OTP]
        if not kept:
            self.clear()
            return 0

        document = {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "messages": [m.to_dict() for m in kept],
        }
        data = json.dumps(document, ensure_ascii=False).encode("utf-8")
        if self._fernet:
            data = self._fernet.encrypt(data)

        try:
            self._write(data)
        except OSError as e:
            logger.error(f"Failed to save queue checkpoint: {e}")
            return 0

        logger.info(f"Queue checkpoint saved: {len(kept)} message(s) -> {self.path}")
        return len(kept)

    def load(self) -> List[QueuedMessage]:
        """
        Read and remove the checkpoint.

        Returns:
            Messages in their original order (empty if missing or unreadable)
        """
        if not self.path.exists():
            return []

        try:
            raw = self._read()
            if self._fernet:
                raw = self._fernet.decrypt(raw)
            document = json.loads(raw.decode("utf-8"))
            messages = [QueuedMessage.from_dict(item) for item in document.get("messages", [])]
        except InvalidToken:
            logger.error("Queue checkpoint cannot be decrypted with the current ENCRYPTION_KEY")
            messages = []
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to load queue checkpoint: {e}")
            messages = []

        self.clear()
        if messages:
            logger.info(f"Queue checkpoint restored: {len(messages)} message(s)")
        return messages

    def clear(self) -> None:
        try:
            self.path.unlink()
            logger.debug("Queue checkpoint cleared")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to clear queue checkpoint: {e}")

    async def save_async(self, messages: List[QueuedMessage]) -> int:
        """Async wrapper for save, keeps file I/O off the event loop."""
        return await asyncio.to_thread(self.save, messages)

    async def load_async(self) -> List[QueuedMessage]:
        """Async wrapper for load."""
        return await asyncio.to_thread(self.load)
