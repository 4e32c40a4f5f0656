from __future__ import annotations

import threading

import allure
import pytest

from deferred_worker.errors import QueueClosedError
from deferred_worker.models import WorkItem
from deferred_worker.work_queue import WorkQueue

pytestmark = [
    allure.epic("Deferred Processing"),
    allure.feature("Work Hand-off"),
]


def _item(sequence_number: int) -> WorkItem:
    return WorkItem(sequence_number=sequence_number, payload=f"file-{sequence_number}.txt")


def test_items_come_out_in_arrival_order() -> None:
    queue = WorkQueue()
    queue.put(_item(1))
    queue.put(_item(2))

    assert len(queue) == 2
    assert queue.get().sequence_number == 1
    assert queue.get().sequence_number == 2
    assert queue.get(timeout=0.01) is None


def test_close_with_drain_delivers_pending_items_then_none() -> None:
    queue = WorkQueue()
    queue.put(_item(1))

    assert queue.close() == []
    assert queue.closed
    assert queue.get().sequence_number == 1
    assert queue.get() is None


def test_close_without_drain_returns_discarded_items() -> None:
    queue = WorkQueue()
    queue.put(_item(1))
    queue.put(_item(2))

    discarded = queue.close(drain=False)

    assert [item.sequence_number for item in discarded] == [1, 2]
    assert len(queue) == 0
    assert queue.get() is None


def test_put_after_close_is_rejected() -> None:
    queue = WorkQueue()
    queue.close()

    with pytest.raises(QueueClosedError, match="item 3 rejected"):
        queue.put(_item(3))


def test_close_wakes_blocked_consumers() -> None:
    queue = WorkQueue()
    results: list[WorkItem | None] = []
    consumers = [threading.Thread(target=lambda: results.append(queue.get())) for _ in range(3)]
    for consumer in consumers:
        consumer.start()

    queue.close()
    for consumer in consumers:
        consumer.join(timeout=5)

    assert results == [None, None, None]


def test_withdraw_removes_only_unclaimed_items() -> None:
    queue = WorkQueue()
    queue.put(_item(1))
    queue.put(_item(2))

    assert queue.withdraw(1) is True
    assert queue.withdraw(1) is False
    assert queue.get().sequence_number == 2
    assert queue.withdraw(2) is False
