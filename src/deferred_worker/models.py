"""Domain models for deferred work tracking."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any

EXPECTED_COMPLETION_KEY = "expectedCompletion"
PERCENT_DONE_KEY = "percentDone"

MISSING_DEADLINE_REASON = "missing expected completion time"
EXCEEDED_DEADLINE_REASON = "exceeded expected completion time"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """Return a timezone-aware UTC datetime, treating naive values as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class MessageState(str, Enum):
    """Broker-side message states visible to this process."""

    ACTIVE = "active"
    DEFERRED = "deferred"


class Disposition(str, Enum):
    """How a work item left the worker pool."""

    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"
    ABANDONED = "abandoned"
    LOST_RACE = "lost_race"


class ExitCode(IntEnum):
    """Process exit status reported to the supervisor."""

    OK = 0
    ERROR = 1
    CANCELLED = -1


@dataclass(frozen=True, slots=True)
class TrackingProperties:
    """Deadline and progress metadata carried on a deferred message.

    ``None`` means "not set". Merging never clears a field: only the fields set
    on the update override the current value.
    """

    expected_completion: datetime | None = None
    percent_done: float | None = None

    def merged(self, update: TrackingProperties | None) -> TrackingProperties:
        if update is None:
            return self
        return TrackingProperties(
            expected_completion=(
                update.expected_completion
                if update.expected_completion is not None
                else self.expected_completion
            ),
            percent_done=(
                update.percent_done if update.percent_done is not None else self.percent_done
            ),
        )

    def to_application_properties(self) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        if self.expected_completion is not None:
            properties[EXPECTED_COMPLETION_KEY] = as_utc(self.expected_completion)
        if self.percent_done is not None:
            properties[PERCENT_DONE_KEY] = float(self.percent_done)
        return properties

    @classmethod
    def from_application_properties(
        cls,
        properties: Mapping[str, Any] | None,
    ) -> TrackingProperties:
        """Read tracking keys from a raw property bag, ignoring anything unrecognized."""

        if not properties:
            return cls()
        return cls(
            expected_completion=_parse_timestamp(properties.get(EXPECTED_COMPLETION_KEY)),
            percent_done=_parse_float(properties.get(PERCENT_DONE_KEY)),
        )


@dataclass(frozen=True, slots=True)
class WorkItem:
    """One unit of work handed from ingestion to the worker pool."""

    sequence_number: int
    payload: bytes | str


@dataclass(frozen=True, slots=True)
class MessageRecord:
    """Non-destructive snapshot of a queued message."""

    sequence_number: int
    state: MessageState
    properties: TrackingProperties
    delivery_count: int = 0
    enqueued_at: datetime | None = None


@dataclass(slots=True)
class WatchdogTickSummary:
    """Counters for one watchdog scan."""

    scanned: int = 0
    deferred: int = 0
    dead_lettered_missing: int = 0
    dead_lettered_overdue: int = 0
    race_losses: int = 0
    pages: int = 0

    @property
    def dead_lettered(self) -> int:
        return self.dead_lettered_missing + self.dead_lettered_overdue


@dataclass(slots=True)
class ServiceSummary:
    """Aggregate counters for CLI reporting."""

    received: int = 0
    completed: int = 0
    dead_lettered: int = 0
    reaped: int = 0
    abandoned: int = 0
    race_losses: int = 0
    errors: int = 0
    watchdog_ticks: int = 0


class ServiceCounters:
    """Thread-safe counters shared by ingestion, workers, and the watchdog.

    Also tracks which accepted sequence numbers are still in flight so the
    service can tell when every accepted item reached a terminal disposition.
    """

    def __init__(self) -> None:
        self._summary = ServiceSummary()
        self._in_flight: set[int] = set()
        self._lock = threading.Lock()

    def accepted(self, sequence_number: int) -> None:
        with self._lock:
            self._summary.received += 1
            self._in_flight.add(sequence_number)

    def withdrawn(self, sequence_number: int) -> None:
        """Undo :meth:`accepted` for an item that never reached the worker pool."""

        with self._lock:
            if sequence_number in self._in_flight:
                self._summary.received -= 1
                self._in_flight.discard(sequence_number)

    def settled(
        self,
        sequence_number: int,
        disposition: Disposition,
        *,
        by_watchdog: bool = False,
    ) -> None:
        name = "reaped" if by_watchdog else _DISPOSITION_COUNTERS[disposition]
        with self._lock:
            setattr(self._summary, name, getattr(self._summary, name) + 1)
            self._in_flight.discard(sequence_number)

    def add(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self._summary, name, getattr(self._summary, name) + amount)

    def snapshot(self) -> ServiceSummary:
        with self._lock:
            return replace(self._summary)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)


_DISPOSITION_COUNTERS = {
    Disposition.COMPLETED: "completed",
    Disposition.DEAD_LETTERED: "dead_lettered",
    Disposition.ABANDONED: "abandoned",
    Disposition.LOST_RACE: "race_losses",
}


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value.strip():
        try:
            return as_utc(datetime.fromisoformat(value.strip()))
        except ValueError:
            return None
    return None


def _parse_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None
