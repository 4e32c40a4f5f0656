from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from fakes import T0, FlakyBroker, defer_with, wait_for

from deferred_worker.broker.memory import InMemoryBroker
from deferred_worker.errors import ProtocolViolation
from deferred_worker.models import (
    EXCEEDED_DEADLINE_REASON,
    MISSING_DEADLINE_REASON,
    MessageRecord,
    MessageState,
    ServiceCounters,
    TrackingProperties,
)
from deferred_worker.watchdog import (
    SCAN_MODE_CURSOR,
    SCAN_MODE_WINDOW,
    DeferralWatchdog,
    audit_record,
)

pytestmark = [
    allure.epic("Deferred Processing"),
    allure.feature("Deadline Watchdog"),
]


def _deadline(seconds: float) -> TrackingProperties:
    return TrackingProperties(expected_completion=T0 + timedelta(seconds=seconds))


def _record(state: MessageState, properties: TrackingProperties) -> MessageRecord:
    return MessageRecord(sequence_number=9, state=state, properties=properties)


def test_audit_record_ignores_active_messages() -> None:
    assert audit_record(_record(MessageState.ACTIVE, TrackingProperties()), T0) is None


def test_audit_record_flags_missing_deadline() -> None:
    with pytest.raises(ProtocolViolation) as caught:
        audit_record(_record(MessageState.DEFERRED, TrackingProperties(percent_done=50)), T0)

    assert caught.value.reason == MISSING_DEADLINE_REASON
    assert caught.value.sequence_number == 9


def test_audit_record_is_strict_about_the_deadline() -> None:
    record = _record(MessageState.DEFERRED, _deadline(10))

    assert audit_record(record, T0 + timedelta(seconds=10)) is None
    assert audit_record(record, T0 + timedelta(seconds=11)) == EXCEEDED_DEADLINE_REASON


def test_tick_dead_letters_deferred_message_without_deadline(
    broker: InMemoryBroker,
    clock,
) -> None:
    counters = ServiceCounters()
    sequence_number = defer_with(broker, "orphan.txt")

    summary = DeferralWatchdog(broker=broker, clock=clock, counters=counters).tick()

    assert summary.dead_lettered_missing == 1
    (dead_letter,) = broker.dead_letters()
    assert dead_letter.sequence_number == sequence_number
    assert dead_letter.reason == MISSING_DEADLINE_REASON
    assert counters.snapshot().reaped == 1
    assert counters.snapshot().watchdog_ticks == 1


def test_tick_dead_letters_only_overdue_messages(broker: InMemoryBroker, clock) -> None:
    overdue = defer_with(broker, "slow.txt", _deadline(10))
    on_time = defer_with(broker, "fine.txt", _deadline(600))
    fresh = broker.send("new.txt")
    clock.advance(11)

    summary = DeferralWatchdog(broker=broker, clock=clock).tick()

    assert summary.scanned == 3
    assert summary.deferred == 2
    assert summary.dead_lettered_overdue == 1
    assert [record.sequence_number for record in broker.dead_letters()] == [overdue]
    assert broker.dead_letters()[0].reason == EXCEEDED_DEADLINE_REASON
    assert broker.get(on_time).state is MessageState.DEFERRED
    assert broker.get(fresh).state is MessageState.ACTIVE


def test_message_locked_by_a_worker_is_a_race_loss(broker: InMemoryBroker, clock) -> None:
    sequence_number = defer_with(broker, "busy.txt", _deadline(10))
    clock.advance(11)
    held = broker.receive_deferred(sequence_number)

    summary = DeferralWatchdog(broker=broker, clock=clock).tick()

    assert summary.race_losses == 1
    assert summary.dead_lettered == 0
    broker.complete(held)
    assert broker.completed() == [sequence_number]


class _StalePeekBroker(InMemoryBroker):
    """Completes every deferred message right after it was peeked."""

    def peek(self, max_count, from_sequence_number=None):
        records = super().peek(max_count, from_sequence_number)
        for record in records:
            if record.state is MessageState.DEFERRED:
                self.complete(self.receive_deferred(record.sequence_number))
        return records


def test_message_settled_after_peek_is_a_race_loss(clock) -> None:
    broker = _StalePeekBroker(clock=clock)
    sequence_number = defer_with(broker, "done.txt", _deadline(10))
    clock.advance(11)

    summary = DeferralWatchdog(broker=broker, clock=clock).tick()

    assert summary.race_losses == 1
    assert broker.dead_letters() == []
    assert broker.completed() == [sequence_number]
    broker.close()


def _queue_with_overdue_tail(broker: InMemoryBroker, clock) -> list[int]:
    for index in range(2):
        defer_with(broker, f"head-{index}.txt", _deadline(600))
    tail = [defer_with(broker, f"tail-{index}.txt", _deadline(10)) for index in range(3)]
    clock.advance(11)
    return tail


def test_window_mode_never_sees_past_the_queue_head(broker: InMemoryBroker, clock) -> None:
    _queue_with_overdue_tail(broker, clock)
    watchdog = DeferralWatchdog(
        broker=broker,
        peek_window=2,
        scan_mode=SCAN_MODE_WINDOW,
        clock=clock,
    )

    for _ in range(3):
        summary = watchdog.tick()
        assert summary.scanned == 2
        assert summary.dead_lettered == 0

    assert broker.dead_letters() == []


def test_cursor_mode_pages_through_the_whole_queue(broker: InMemoryBroker, clock) -> None:
    tail = _queue_with_overdue_tail(broker, clock)
    watchdog = DeferralWatchdog(broker=broker, peek_window=2, clock=clock)

    summary = watchdog.tick()

    assert watchdog.scan_mode == SCAN_MODE_CURSOR
    assert summary.pages == 3
    assert summary.scanned == 5
    assert summary.dead_lettered_overdue == 3
    assert sorted(record.sequence_number for record in broker.dead_letters()) == tail
    assert watchdog.cursor is None


def test_cursor_mode_resumes_where_the_previous_tick_stopped(
    broker: InMemoryBroker,
    clock,
) -> None:
    tail = _queue_with_overdue_tail(broker, clock)
    watchdog = DeferralWatchdog(broker=broker, peek_window=2, max_pages=1, clock=clock)

    first = watchdog.tick()
    assert first.dead_lettered == 0
    assert watchdog.cursor == tail[0]

    second = watchdog.tick()
    assert second.dead_lettered == 2
    assert watchdog.cursor == tail[2]

    third = watchdog.tick()
    assert third.dead_lettered == 1
    assert watchdog.cursor is None


def test_failed_tick_is_skipped_until_the_next_interval(clock) -> None:
    broker = FlakyBroker(failures={"peek": 1}, clock=clock)
    defer_with(broker, "orphan.txt")
    counters = ServiceCounters()
    watchdog = DeferralWatchdog(broker=broker, clock=clock, counters=counters)

    assert watchdog.tick() is None
    assert watchdog.tick().dead_lettered_missing == 1

    summary = counters.snapshot()
    assert summary.errors == 1
    assert summary.watchdog_ticks == 1
    broker.close()


def test_unknown_scan_mode_is_rejected(broker: InMemoryBroker) -> None:
    with pytest.raises(ValueError, match="scan mode"):
        DeferralWatchdog(broker=broker, scan_mode="sideways")


def test_started_watchdog_reaps_on_its_own_schedule(broker: InMemoryBroker, clock) -> None:
    defer_with(broker, "orphan.txt")
    watchdog = DeferralWatchdog(broker=broker, interval_seconds=0.01, clock=clock)

    watchdog.start()
    wait_for(lambda: bool(broker.dead_letters()))
    watchdog.stop()

    assert broker.dead_letters()[0].reason == MISSING_DEADLINE_REASON
