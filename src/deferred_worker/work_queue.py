"""Closeable hand-off buffer between ingestion and the worker pool."""

from __future__ import annotations

import threading
from collections import deque

from deferred_worker.errors import QueueClosedError
from deferred_worker.models import WorkItem


class WorkQueue:
    """Unbounded multi-producer / multi-consumer queue with explicit shutdown.

    ``get`` blocks until an item is available or the queue is closed. After
    ``close(drain=True)`` consumers still receive the items already queued and
    then ``None``; ``close(drain=False)`` discards pending items immediately.
    """

    def __init__(self) -> None:
        self._items: deque[WorkItem] = deque()
        self._closed = False
        self._not_empty = threading.Condition()

    @property
    def closed(self) -> bool:
        with self._not_empty:
            return self._closed

    def __len__(self) -> int:
        with self._not_empty:
            return len(self._items)

    def put(self, item: WorkItem) -> None:
        with self._not_empty:
            if self._closed:
                raise QueueClosedError(
                    f"Work queue is closed; item {item.sequence_number} rejected",
                )
            self._items.append(item)
            self._not_empty.notify()

    def get(self, timeout: float | None = None) -> WorkItem | None:
        """Take the next item, or ``None`` once the queue is closed and empty.

        With ``timeout`` set, ``None`` is also returned when nothing arrived in time.
        """

        with self._not_empty:
            self._not_empty.wait_for(lambda: self._items or self._closed, timeout=timeout)
            if self._items:
                return self._items.popleft()
            return None

    def withdraw(self, sequence_number: int) -> bool:
        """Remove a pending item that has not been claimed by a worker yet."""

        with self._not_empty:
            for item in self._items:
                if item.sequence_number == sequence_number:
                    self._items.remove(item)
                    return True
            return False

    def close(self, *, drain: bool = True) -> list[WorkItem]:
        """Stop accepting items and wake every blocked consumer.

        Returns the pending items discarded when ``drain`` is false.
        """

        with self._not_empty:
            self._closed = True
            discarded: list[WorkItem] = []
            if not drain:
                discarded = list(self._items)
                self._items.clear()
            self._not_empty.notify_all()
            return discarded
