"""Bounded FIFO of messages waiting for a Ready transport."""

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, List, Optional

from loguru import logger

from courier.constants import Queue
from courier.core.exceptions import QueueFullError
from courier.utils.masking import mask_phone

from .models import QueuedMessage

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryQueue:
    """
    Thread-safe FIFO of ``QueuedMessage``.

    The head is only removed once it is delivered or given up on, so a
    failing message is retried before anything behind it is attempted.
    """

    def __init__(self, max_size: int = Queue.MAX_SIZE, clock: Clock = _utcnow):
        self._max_size = max_size
        self._clock = clock
        self._items: Deque[QueuedMessage] = deque()
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def enqueue(self, message: QueuedMessage) -> QueuedMessage:
        """
        Append a message at the tail.

        Raises:
            QueueFullError: If the queue already holds max_size messages
        """
        with self._lock:
            if len(self._items) >= self._max_size:
                raise QueueFullError(self._max_size)
            self._items.append(message)
            depth = len(self._items)
        logger.info(
            f"Queued {message.kind.value} {message.id} for {mask_phone(message.target)} "
            f"(depth: {depth})"
        )
        return message

    def peek(self) -> Optional[QueuedMessage]:
        with self._lock:
            return self._items[0] if self._items else None

    def get(self, message_id: str) -> Optional[QueuedMessage]:
        with self._lock:
            for message in self._items:
                if message.id == message_id:
                    return message
        return None

    def remove(self, message_id: str) -> Optional[QueuedMessage]:
        """Remove a message wherever it is; returns it, or None if absent."""
        with self._lock:
            for message in self._items:
                if message.id == message_id:
                    self._items.remove(message)
                    return message
        return None

    def record_failure(self, message_id: str, error: str) -> Optional[QueuedMessage]:
        """
        Count one message-level failure against a queued message.

        Returns:
            The updated message, or None if it is no longer queued
        """
        with self._lock:
            for message in self._items:
                if message.id == message_id:
                    message.attempt_count += 1
                    message.last_error = error
                    return message
        return None

    def purge(self, predicate: Callable[[QueuedMessage], bool]) -> List[QueuedMessage]:
        """Remove and return every message matching ``predicate``."""
        with self._lock:
            removed = [m for m in self._items if predicate(m)]
            if removed:
                self._items = deque(m for m in self._items if not predicate(m))
        return removed

    def snapshot(self) -> List[QueuedMessage]:
        """Copy of the queue contents in delivery order."""
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
