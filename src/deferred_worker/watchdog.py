"""Periodic audit of deferred messages against their expected-completion deadline."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from datetime import datetime

from deferred_worker.broker.base import BrokerClient
from deferred_worker.errors import (
    LockLostError,
    MessageLockedError,
    ProtocolViolation,
    RaceLossError,
)
from deferred_worker.models import (
    EXCEEDED_DEADLINE_REASON,
    MISSING_DEADLINE_REASON,
    Disposition,
    MessageRecord,
    MessageState,
    ServiceCounters,
    WatchdogTickSummary,
    utc_now,
)
from deferred_worker.periodic import PeriodicTask
from deferred_worker.transitions import MessageEvent, log_transition

logger = logging.getLogger(__name__)

SCAN_MODE_CURSOR = "cursor"
SCAN_MODE_WINDOW = "window"


def audit_record(record: MessageRecord, now: datetime) -> str | None:
    """Return the dead-letter reason for ``record``, or ``None`` to leave it alone.

    Raises:
        ProtocolViolation: the record is deferred without an expected completion.
    """

    if record.state is not MessageState.DEFERRED:
        return None
    expected_completion = record.properties.expected_completion
    if expected_completion is None:
        raise ProtocolViolation(record.sequence_number, MISSING_DEADLINE_REASON)
    if now > expected_completion:
        return EXCEEDED_DEADLINE_REASON
    return None


class DeferralWatchdog:
    """Dead-letters deferred messages that are overdue or missing their deadline.

    Works only through peek, receive-deferred, and dead-letter, so it can run
    in a different process from the workers. Losing a lock race against a
    worker that just settled the message is expected and only logged.

    In ``window`` mode each tick inspects the first ``peek_window`` messages
    of the queue. In ``cursor`` mode each tick pages through the queue from
    where the previous tick stopped, ``peek_window`` records per page and at
    most ``max_pages`` pages, wrapping to the head after the last page.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: BrokerClient,
        interval_seconds: float = 30.0,
        peek_window: int = 10,
        scan_mode: str = SCAN_MODE_CURSOR,
        max_pages: int = 50,
        clock: Callable[[], datetime] = utc_now,
        counters: ServiceCounters | None = None,
    ) -> None:
        if scan_mode not in {SCAN_MODE_CURSOR, SCAN_MODE_WINDOW}:
            raise ValueError(f"Unknown watchdog scan mode: {scan_mode!r}")
        self.broker = broker
        self.peek_window = peek_window
        self.scan_mode = scan_mode
        self.max_pages = max_pages
        self._clock = clock
        self._counters = counters or ServiceCounters()
        self._cursor: int | None = None
        self._task = PeriodicTask(
            name="deferral-watchdog",
            interval_seconds=interval_seconds,
            callback=self.tick,
        )

    @property
    def cursor(self) -> int | None:
        """Sequence number the next cursor-mode page starts from (``None`` = head)."""

        return self._cursor

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()

    def tick(self) -> WatchdogTickSummary | None:
        """Run one scan; failures are logged and the tick is skipped."""

        try:
            summary = self.scan_once()
        except Exception:
            self._counters.add("errors")
            logger.exception("Watchdog tick failed; skipping until the next interval")
            return None
        self._counters.add("watchdog_ticks")
        if summary.dead_lettered or summary.race_losses:
            logger.info(
                "Watchdog tick: scanned=%d deferred=%d missing=%d overdue=%d race_losses=%d",
                summary.scanned,
                summary.deferred,
                summary.dead_lettered_missing,
                summary.dead_lettered_overdue,
                summary.race_losses,
            )
        return summary

    def scan_once(self) -> WatchdogTickSummary:
        summary = WatchdogTickSummary()
        now = self._clock()
        for records in self._pages():
            summary.pages += 1
            for record in records:
                summary.scanned += 1
                self._audit(record, now=now, summary=summary)
        return summary

    def _pages(self) -> Iterator[list[MessageRecord]]:
        if self.scan_mode == SCAN_MODE_WINDOW:
            yield self.broker.peek(self.peek_window)
            return

        for _ in range(self.max_pages):
            records = self.broker.peek(self.peek_window, from_sequence_number=self._cursor)
            if len(records) < self.peek_window:
                self._cursor = None
                yield records
                return
            self._cursor = records[-1].sequence_number + 1
            yield records

    def _audit(
        self,
        record: MessageRecord,
        *,
        now: datetime,
        summary: WatchdogTickSummary,
    ) -> None:
        if record.state is not MessageState.DEFERRED:
            return
        summary.deferred += 1
        logger.debug("Message %d is deferred", record.sequence_number)
        try:
            reason = audit_record(record, now)
        except ProtocolViolation as violation:
            if self._dead_letter(record, violation.reason, summary=summary):
                summary.dead_lettered_missing += 1
            return
        if reason is not None and self._dead_letter(record, reason, summary=summary):
            summary.dead_lettered_overdue += 1

    def _dead_letter(
        self,
        record: MessageRecord,
        reason: str,
        *,
        summary: WatchdogTickSummary,
    ) -> bool:
        sequence_number = record.sequence_number
        try:
            message = self.broker.receive_deferred(sequence_number)
            self.broker.dead_letter(message, reason)
        except (RaceLossError, MessageLockedError, LockLostError) as error:
            summary.race_losses += 1
            log_transition(
                logger,
                MessageEvent.RACE_LOST,
                sequence_number,
                source="watchdog",
                error=error,
            )
            return False
        self._counters.settled(sequence_number, Disposition.DEAD_LETTERED, by_watchdog=True)
        log_transition(
            logger,
            MessageEvent.DEAD_LETTERED,
            sequence_number,
            source="watchdog",
            reason=reason,
            expected_completion=record.properties.expected_completion or "-",
            percent_done=(
                record.properties.percent_done
                if record.properties.percent_done is not None
                else "-"
            ),
        )
        return True
