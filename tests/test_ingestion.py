from __future__ import annotations

import logging
from datetime import timedelta

import allure
import pytest
from fakes import T0, FlakyBroker, receive_one

from deferred_worker.broker.memory import InMemoryBroker
from deferred_worker.errors import BrokerOperationError, QueueClosedError
from deferred_worker.ingestion import IngestionHandler
from deferred_worker.models import MessageState, ServiceCounters
from deferred_worker.work_queue import WorkQueue

pytestmark = [
    allure.epic("Deferred Processing"),
    allure.feature("Ingestion"),
]


def _handler(broker, clock, *, multiplier: float = 2.0):
    counters = ServiceCounters()
    work_queue = WorkQueue()
    handler = IngestionHandler(
        broker=broker,
        work_queue=work_queue,
        expected_processing_seconds=180,
        deadline_multiplier=multiplier,
        clock=clock,
        counters=counters,
    )
    return handler, work_queue, counters


def test_message_is_queued_and_deferred_with_deadline(
    broker: InMemoryBroker,
    clock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="deferred_worker.ingestion")
    handler, work_queue, counters = _handler(broker, clock)
    message = receive_one(broker, "invoice.pdf")

    handler(message)

    item = work_queue.get(timeout=0)
    assert item.sequence_number == message.sequence_number
    assert item.payload == "invoice.pdf"
    record = broker.get(message.sequence_number)
    assert record.state is MessageState.DEFERRED
    assert record.properties.expected_completion == T0 + timedelta(minutes=6)
    assert record.properties.percent_done is None
    assert counters.snapshot().received == 1
    assert counters.in_flight() == 1
    assert [entry.getMessage().split(" ")[0] for entry in caplog.records] == [
        "event=received",
        "event=deferred",
    ]


def test_deadline_budget_follows_multiplier(broker: InMemoryBroker, clock) -> None:
    handler, _, _ = _handler(broker, clock, multiplier=3.0)
    message = receive_one(broker, "invoice.pdf")

    handler(message)

    record = broker.get(message.sequence_number)
    assert record.properties.expected_completion == T0 + timedelta(minutes=9)


def test_failed_defer_withdraws_the_queued_item(clock) -> None:
    broker = FlakyBroker(failures={"defer": 1}, clock=clock)
    handler, work_queue, counters = _handler(broker, clock)
    message = receive_one(broker, "invoice.pdf")

    with pytest.raises(BrokerOperationError, match="defer failed"):
        handler(message)

    assert len(work_queue) == 0
    assert counters.snapshot().received == 0
    assert counters.in_flight() == 0
    assert broker.get(message.sequence_number).state is MessageState.ACTIVE
    broker.close()


def test_closed_work_queue_rejects_delivery_without_deferring(
    broker: InMemoryBroker,
    clock,
) -> None:
    handler, work_queue, counters = _handler(broker, clock)
    work_queue.close()
    message = receive_one(broker, "invoice.pdf")

    with pytest.raises(QueueClosedError):
        handler(message)

    assert broker.get(message.sequence_number).state is MessageState.ACTIVE
    assert counters.snapshot().received == 0


def test_on_error_counts_and_logs(
    broker: InMemoryBroker,
    clock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.ERROR, logger="deferred_worker.ingestion")
    handler, _, counters = _handler(broker, clock)

    handler.on_error(BrokerOperationError("defer failed", sequence_number=12))

    assert counters.snapshot().errors == 1
    (record,) = caplog.records
    assert record.getMessage() == "event=error seq=12 source=ingestion error='defer failed'"
