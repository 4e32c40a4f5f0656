"""Broker delivery callback: hand work to the pool and defer with a deadline."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from deferred_worker.broker.base import BrokerClient, ReceivedMessage
from deferred_worker.errors import QueueClosedError
from deferred_worker.models import ServiceCounters, TrackingProperties, WorkItem, utc_now
from deferred_worker.transitions import MessageEvent, log_transition
from deferred_worker.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class IngestionHandler:
    """Turns newly delivered messages into queued work items.

    Invoked concurrently by the broker for distinct messages. The message is
    never completed or abandoned here: it is deferred with an
    ``expected_completion`` deadline so that workers can re-acquire it by
    sequence number and the watchdog can audit it. Failures propagate to the
    broker's error channel, which applies its own redelivery policy.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: BrokerClient,
        work_queue: WorkQueue,
        expected_processing_seconds: float,
        deadline_multiplier: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
        counters: ServiceCounters | None = None,
    ) -> None:
        self.broker = broker
        self.work_queue = work_queue
        self.deadline_budget = timedelta(
            seconds=expected_processing_seconds * deadline_multiplier,
        )
        self._clock = clock
        self._counters = counters or ServiceCounters()

    def __call__(self, message: ReceivedMessage) -> None:
        sequence_number = message.sequence_number
        log_transition(
            logger,
            MessageEvent.RECEIVED,
            sequence_number,
            delivery_count=message.delivery_count,
        )
        self._counters.accepted(sequence_number)
        try:
            self.work_queue.put(WorkItem(sequence_number=sequence_number, payload=message.body))
        except QueueClosedError:
            self._counters.withdrawn(sequence_number)
            raise

        expected_completion = self._clock() + self.deadline_budget
        try:
            self.broker.defer(
                message,
                TrackingProperties(expected_completion=expected_completion),
            )
        except Exception:
            # The broker will redeliver; an unclaimed copy must not be processed as well.
            if self.work_queue.withdraw(sequence_number):
                self._counters.withdrawn(sequence_number)
            raise

        log_transition(
            logger,
            MessageEvent.DEFERRED,
            sequence_number,
            expected_completion=expected_completion,
        )

    def on_error(self, error: BaseException) -> None:
        """Error channel passed to the broker subscription."""

        self._counters.add("errors")
        log_transition(
            logger,
            MessageEvent.ERROR,
            getattr(error, "sequence_number", None),
            source="ingestion",
            error=error,
            exc_info=error,
        )
