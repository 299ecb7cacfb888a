"""
In-process work queue of transaction ids.

Used for the processing queue (new transactions) and the recalculation queue
(transactions whose graph may have changed). Ids move pending -> in flight ->
processed or failed. Thread-safe.
"""

from __future__ import annotations

import threading
from collections import deque

from backend_frida.frida_logging import get_logger

logger = get_logger(__name__)


class InMemoryQueue:
    """FIFO of transaction ids; an id already pending or in flight is not queued twice."""

    def __init__(self, name: str = "processing") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._pending: deque[int] = deque()
        self._queued: set[int] = set()
        self._in_flight: set[int] = set()
        self._processed: list[int] = []
        self._failed: dict[int, str] = {}

    def enqueue(self, transaction_id: int) -> None:
        with self._lock:
            if transaction_id in self._queued or transaction_id in self._in_flight:
                return
            self._pending.append(transaction_id)
            self._queued.add(transaction_id)
        logger.debug("queue_enqueued", queue=self.name, transaction_id=transaction_id)

    def fetch_next(self) -> int | None:
        with self._lock:
            if not self._pending:
                return None
            transaction_id = self._pending.popleft()
            self._queued.discard(transaction_id)
            self._in_flight.add(transaction_id)
            return transaction_id

    def mark_processed(self, transaction_id: int) -> None:
        with self._lock:
            self._in_flight.discard(transaction_id)
            self._failed.pop(transaction_id, None)
            self._processed.append(transaction_id)

    def mark_failed(self, transaction_id: int, error: BaseException | str) -> None:
        with self._lock:
            self._in_flight.discard(transaction_id)
            self._failed[transaction_id] = str(error)
        logger.warning(
            "queue_item_failed", queue=self.name, transaction_id=transaction_id, error=str(error)
        )

    @property
    def processed(self) -> list[int]:
        with self._lock:
            return list(self._processed)

    @property
    def failed(self) -> dict[int, str]:
        with self._lock:
            return dict(self._failed)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)
