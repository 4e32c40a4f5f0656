"""Worker pool that processes items in slices and reports progress by re-deferring."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Protocol

from deferred_worker.broker.base import BrokerClient, ReceivedMessage
from deferred_worker.errors import (
    BrokerOperationError,
    DeferredWorkerError,
    LockLostError,
    RaceLossError,
)
from deferred_worker.models import Disposition, ServiceCounters, TrackingProperties, WorkItem
from deferred_worker.retry import Retrier, RetryInterrupted, RetryPolicy
from deferred_worker.transitions import MessageEvent, log_transition
from deferred_worker.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class ProcessingError(DeferredWorkerError):
    """The work processor raised while handling an item."""

    def __init__(self, sequence_number: int, cause: BaseException) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.sequence_number = sequence_number


class WorkProcessor(Protocol):
    """Performs the actual work, one slice at a time."""

    def run_slice(self, item: WorkItem, seconds: float, stop_event: threading.Event) -> bool:
        """Work on ``item`` for ``seconds``; return False if interrupted by ``stop_event``."""


class SimulatedWorkProcessor:
    """Stands in for real work by waiting out each slice."""

    def run_slice(self, item: WorkItem, seconds: float, stop_event: threading.Event) -> bool:
        return not stop_event.wait(timeout=seconds)


class Worker:
    """Consumes work items and drives each one to a terminal disposition.

    Every progress step re-acquires the message by sequence number, so
    exclusivity across workers and the watchdog comes from the broker lock.
    Within one step the acquired handle is kept across retries and is only
    replaced when its lock is lost.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: BrokerClient,
        work_queue: WorkQueue,
        processor: WorkProcessor,
        expected_processing_seconds: float,
        slice_seconds: float,
        retrier: Retrier,
        stop_event: threading.Event,
        worker_id: str = "worker-1",
        counters: ServiceCounters | None = None,
    ) -> None:
        self.broker = broker
        self.work_queue = work_queue
        self.processor = processor
        self.expected_processing_seconds = expected_processing_seconds
        self.slice_seconds = slice_seconds
        self.retrier = retrier
        self.worker_id = worker_id
        self._stop_event = stop_event
        self._counters = counters or ServiceCounters()
        self._held: ReceivedMessage | None = None

    def run_loop(self) -> None:
        """Process items until the work queue is closed and empty or stop is requested."""

        logger.info("Worker %s started", self.worker_id)
        while not self._stop_event.is_set():
            item = self.work_queue.get()
            if item is None:
                break
            try:
                self.process_item(item)
            except Exception:
                logger.exception(
                    "Worker %s failed on item %d",
                    self.worker_id,
                    item.sequence_number,
                )
                self._counters.settled(item.sequence_number, Disposition.ABANDONED)
        logger.info("Worker %s stopped", self.worker_id)

    def process_item(self, item: WorkItem) -> Disposition:
        """Claim, process, and settle one item; never raises for broker or work failures."""

        sequence_number = item.sequence_number
        self._held = None
        try:
            disposition = self._process(item)
        except RaceLossError as error:
            log_transition(
                logger,
                MessageEvent.RACE_LOST,
                sequence_number,
                worker=self.worker_id,
                error=error,
            )
            disposition = Disposition.LOST_RACE
        except RetryInterrupted:
            disposition = self._abandon(item, why="shutdown during retry")
        except BrokerOperationError as error:
            self._log_error(sequence_number, error)
            disposition = self._dead_letter_after_failure(item, f"processing failed: {error}")
        except ProcessingError as error:
            self._log_error(sequence_number, error)
            disposition = self._dead_letter_after_failure(item, f"processing error: {error}")
        self._held = None
        self._counters.settled(sequence_number, disposition)
        return disposition

    def _process(self, item: WorkItem) -> Disposition:
        sequence_number = item.sequence_number
        expected = self.expected_processing_seconds
        self._redefer(sequence_number, percent_done=0.0)

        elapsed = 0.0
        slice_index = 0
        while elapsed < expected:
            if self._stop_event.is_set():
                return self._abandon(item, why="shutdown", percent_done=elapsed * 100 / expected)
            seconds = min(self.slice_seconds, expected - elapsed)
            try:
                finished = self.processor.run_slice(item, seconds, self._stop_event)
            except Exception as error:
                raise ProcessingError(sequence_number, error) from error
            if not finished:
                return self._abandon(item, why="shutdown", percent_done=elapsed * 100 / expected)
            elapsed += seconds
            slice_index += 1
            percent_done = min(100.0, elapsed * 100 / expected)
            self._redefer(sequence_number, percent_done=percent_done)
            log_transition(
                logger,
                MessageEvent.PROGRESS,
                sequence_number,
                worker=self.worker_id,
                slice=slice_index,
                elapsed_seconds=elapsed,
                percent_done=percent_done,
            )

        self._with_lock(sequence_number, self.broker.complete, description="complete")
        log_transition(
            logger,
            MessageEvent.COMPLETED,
            sequence_number,
            worker=self.worker_id,
            slices=slice_index,
        )
        return Disposition.COMPLETED

    def _redefer(self, sequence_number: int, *, percent_done: float) -> None:
        update = TrackingProperties(percent_done=percent_done)
        self._with_lock(
            sequence_number,
            lambda message: self.broker.defer(message, update),
            description="defer",
        )

    def _with_lock(
        self,
        sequence_number: int,
        settle: Callable[[ReceivedMessage], None],
        *,
        description: str,
    ) -> None:
        def _operation() -> None:
            if self._held is None:
                self._held = self.broker.receive_deferred(sequence_number)
            try:
                settle(self._held)
            except LockLostError:
                self._held = None
                raise
            self._held = None

        self.retrier.call(_operation, description=f"{description} message {sequence_number}")

    def _dead_letter_after_failure(self, item: WorkItem, reason: str) -> Disposition:
        sequence_number = item.sequence_number
        message, self._held = self._held, None
        try:
            if message is not None:
                try:
                    self.broker.dead_letter(message, reason)
                except LockLostError:
                    message = None
            if message is None:
                self.broker.dead_letter(self.broker.receive_deferred(sequence_number), reason)
        except RaceLossError as error:
            log_transition(
                logger,
                MessageEvent.RACE_LOST,
                sequence_number,
                worker=self.worker_id,
                error=error,
            )
            return Disposition.LOST_RACE
        except BrokerOperationError as error:
            self._log_error(sequence_number, error)
            return self._abandon(item, why="dead-letter failed")
        log_transition(
            logger,
            MessageEvent.DEAD_LETTERED,
            sequence_number,
            worker=self.worker_id,
            reason=reason,
        )
        return Disposition.DEAD_LETTERED

    def _abandon(
        self,
        item: WorkItem,
        *,
        why: str,
        percent_done: float | None = None,
    ) -> Disposition:
        details: dict[str, object] = {"worker": self.worker_id, "why": why}
        if percent_done is not None:
            details["percent_done"] = percent_done
        log_transition(logger, MessageEvent.ABANDONED, item.sequence_number, **details)
        return Disposition.ABANDONED

    def _log_error(self, sequence_number: int, error: BaseException) -> None:
        self._counters.add("errors")
        log_transition(
            logger,
            MessageEvent.ERROR,
            sequence_number,
            worker=self.worker_id,
            error=error,
        )


class WorkerPool:
    """Fixed number of worker threads sharing one work queue."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: BrokerClient,
        work_queue: WorkQueue,
        processor: WorkProcessor | None = None,
        worker_count: int = 3,
        expected_processing_seconds: float = 180.0,
        slice_seconds: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        counters: ServiceCounters | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if worker_count <= 0:
            raise ValueError("worker_count must be > 0")
        self.work_queue = work_queue
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        retry_policy = retry_policy or RetryPolicy()
        processor = processor or SimulatedWorkProcessor()
        self.workers = [
            Worker(
                broker=broker,
                work_queue=work_queue,
                processor=processor,
                expected_processing_seconds=expected_processing_seconds,
                slice_seconds=slice_seconds,
                retrier=Retrier(retry_policy, stop_event=self._stop_event, rng=rng),
                stop_event=self._stop_event,
                worker_id=f"worker-{index}",
                counters=counters,
            )
            for index in range(1, worker_count + 1)
        ]

    @property
    def size(self) -> int:
        return len(self.workers)

    def alive(self) -> int:
        return sum(1 for thread in self._threads if thread.is_alive())

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._stop_event.clear()
        for worker in self.workers:
            thread = threading.Thread(target=worker.run_loop, daemon=True, name=worker.worker_id)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Interrupt in-flight slices and wait for worker threads to exit.

        The work queue should be closed first so idle workers wake up.
        """

        self._stop_event.set()
        self.join(timeout=timeout)

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)
