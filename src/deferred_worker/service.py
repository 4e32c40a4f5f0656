"""Service lifecycle: wire ingestion, workers, and watchdog to one broker."""

from __future__ import annotations

import logging
import random
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from deferred_worker.broker.base import BrokerClient, Subscription
from deferred_worker.broker.memory import InMemoryBroker
from deferred_worker.config import Settings
from deferred_worker.ingestion import IngestionHandler
from deferred_worker.models import Disposition, ExitCode, ServiceCounters, ServiceSummary, utc_now
from deferred_worker.retry import RetryPolicy
from deferred_worker.transitions import MessageEvent, log_transition
from deferred_worker.watchdog import DeferralWatchdog
from deferred_worker.work_queue import WorkQueue
from deferred_worker.worker import WorkProcessor, WorkerPool

logger = logging.getLogger(__name__)

IDLE_CHECK_SECONDS = 0.2
STOP_SIGNALS = ("SIGINT", "SIGTERM")


def build_broker(
    settings: Settings,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> BrokerClient:
    """Create the broker client selected by ``settings.broker.backend``."""

    if settings.broker.backend == "memory":
        return InMemoryBroker(
            queue_name=settings.broker.queue_name,
            lock_duration_seconds=settings.broker.lock_duration_seconds,
            max_delivery_count=settings.broker.max_delivery_count,
            max_concurrent_calls=settings.broker.max_concurrent_calls,
            clock=clock,
        )
    raise ValueError(f"Unsupported broker backend: {settings.broker.backend!r}")


class DeferralService:
    """Owns the subscription, the worker pool, and the watchdog for one queue.

    Start order is subscription, workers, watchdog. Stop order cancels the
    watchdog first so nothing is reaped while in-flight work winds down;
    messages whose slices are interrupted stay deferred for the broker to
    recover.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: BrokerClient,
        settings: Settings,
        processor: WorkProcessor | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.broker = broker
        self.settings = settings
        self.counters = ServiceCounters()
        self.work_queue = WorkQueue()
        self.ingestion = IngestionHandler(
            broker=broker,
            work_queue=self.work_queue,
            expected_processing_seconds=settings.processing.expected_processing_seconds,
            deadline_multiplier=settings.processing.deadline_multiplier,
            clock=clock,
            counters=self.counters,
        )
        self.pool = WorkerPool(
            broker=broker,
            work_queue=self.work_queue,
            processor=processor,
            worker_count=settings.processing.worker_count,
            expected_processing_seconds=settings.processing.expected_processing_seconds,
            slice_seconds=settings.processing.slice_seconds,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry.max_attempts,
                base_seconds=settings.retry.base_seconds,
                max_seconds=settings.retry.max_seconds,
            ),
            counters=self.counters,
            rng=rng,
        )
        self.watchdog = DeferralWatchdog(
            broker=broker,
            interval_seconds=settings.watchdog.interval_seconds,
            peek_window=settings.watchdog.peek_window,
            scan_mode=settings.watchdog.scan_mode,
            max_pages=settings.watchdog.max_pages,
            clock=clock,
            counters=self.counters,
        )
        self._subscription: Subscription | None = None
        self._stop_requested = threading.Event()
        self._exit_code: ExitCode | None = None
        self._started = False
        self._stopped = False
        self._lock = threading.Lock()

    @property
    def exit_code(self) -> ExitCode | None:
        return self._exit_code

    def summary(self) -> ServiceSummary:
        return self.counters.snapshot()

    def start(self) -> None:
        with self._lock:
            if self._started:
                raise RuntimeError("Service already started")
            self._started = True
        self._subscription = self.broker.subscribe(self.ingestion, self.ingestion.on_error)
        self.pool.start()
        self.watchdog.start()
        logger.info(
            "Service started: workers=%d expected_seconds=%g slice_seconds=%g "
            "watchdog_interval=%g peek_window=%d scan_mode=%s",
            self.pool.size,
            self.settings.processing.expected_processing_seconds,
            self.settings.processing.slice_seconds,
            self.settings.watchdog.interval_seconds,
            self.settings.watchdog.peek_window,
            self.settings.watchdog.scan_mode,
        )

    def request_stop(self, exit_code: ExitCode = ExitCode.OK) -> None:
        """Ask :meth:`run` to return; the first reported exit code wins."""

        with self._lock:
            if self._exit_code is None:
                self._exit_code = exit_code
        self._stop_requested.set()

    def run(self, *, exit_when_idle: bool = False) -> ExitCode:
        """Start, block until stopped, then shut down and report the exit code.

        With ``exit_when_idle`` the service stops on its own once the queue is
        empty and every accepted item reached a terminal disposition.
        """

        try:
            with self._signal_handlers():
                self.start()
                while not self._stop_requested.wait(timeout=IDLE_CHECK_SECONDS):
                    if exit_when_idle and self._idle():
                        logger.info("Queue drained; stopping")
                        self.request_stop(ExitCode.OK)
        except Exception:
            logger.exception("Unhandled exception")
            self.request_stop(ExitCode.ERROR)
        finally:
            self.stop()
        return self._exit_code if self._exit_code is not None else ExitCode.OK

    def stop(self) -> None:
        """Shut down watchdog, subscription, work queue, workers, and broker. Idempotent."""

        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self._stop_requested.set()
        self._shutdown_step("watchdog", self.watchdog.stop)
        if self._subscription is not None:
            self._shutdown_step("subscription", self._subscription.close)
        for item in self.work_queue.close(drain=False):
            log_transition(logger, MessageEvent.ABANDONED, item.sequence_number, why="shutdown")
            self.counters.settled(item.sequence_number, Disposition.ABANDONED)
        self._shutdown_step("worker pool", self.pool.stop)
        self._shutdown_step("broker", self.broker.close)
        summary = self.summary()
        logger.info(
            "Service stopped: exit_code=%s received=%d completed=%d dead_lettered=%d "
            "reaped=%d abandoned=%d race_losses=%d errors=%d",
            self._exit_code.value if self._exit_code is not None else "-",
            summary.received,
            summary.completed,
            summary.dead_lettered,
            summary.reaped,
            summary.abandoned,
            summary.race_losses,
            summary.errors,
        )

    def _idle(self) -> bool:
        return self.counters.in_flight() == 0 and not self.broker.peek(1)

    def _shutdown_step(self, name: str, step: Callable[[], object]) -> None:
        try:
            step()
        except Exception:
            logger.exception("Failed to stop %s", name)
            self.request_stop(ExitCode.ERROR)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        """Map SIGINT and SIGTERM to a cancelled stop while the service runs.

        Nothing is installed outside the main thread.
        """

        def _on_signal(signum: int, _frame: object | None) -> None:
            logger.warning("Received %s; stopping", signal.Signals(signum).name)
            self.request_stop(ExitCode.CANCELLED)

        previous: dict[int, object] = {}
        if threading.current_thread() is threading.main_thread():
            for name in STOP_SIGNALS:
                signum = getattr(signal, name, None)
                if signum is not None:
                    previous[signum] = signal.signal(signum, _on_signal)
        try:
            yield
        finally:
            for signum, handler in previous.items():
                # None means the previous handler was not installed from Python.
                signal.signal(signum, signal.SIG_DFL if handler is None else handler)
