from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta, timezone

import allure
import pytest
from fakes import T0

from deferred_worker.models import (
    EXPECTED_COMPLETION_KEY,
    MISSING_DEADLINE_REASON,
    PERCENT_DONE_KEY,
    Disposition,
    ServiceCounters,
    TrackingProperties,
    as_utc,
)
from deferred_worker.transitions import MessageEvent, log_transition

pytestmark = [
    allure.epic("Deferred Processing"),
    allure.feature("Tracking Metadata"),
]


def test_merged_keeps_fields_the_update_leaves_unset() -> None:
    current = TrackingProperties(expected_completion=T0, percent_done=16.7)

    merged = current.merged(TrackingProperties(percent_done=33.3))

    assert merged.expected_completion == T0
    assert merged.percent_done == 33.3
    assert current.merged(None) is current


def test_to_application_properties_omits_unset_fields() -> None:
    assert TrackingProperties().to_application_properties() == {}
    assert TrackingProperties(percent_done=50).to_application_properties() == {
        PERCENT_DONE_KEY: 50.0,
    }


def test_from_application_properties_reads_wire_keys() -> None:
    properties = TrackingProperties.from_application_properties(
        {
            EXPECTED_COMPLETION_KEY: "2026-03-02T09:06:00",
            PERCENT_DONE_KEY: "16.7",
            "uploadedBy": "scanner",
        },
    )

    assert properties.expected_completion == datetime(2026, 3, 2, 9, 6, tzinfo=UTC)
    assert properties.percent_done == pytest.approx(16.7)


def test_from_application_properties_converts_offsets_to_utc() -> None:
    local = datetime(2026, 3, 2, 11, 0, tzinfo=timezone(timedelta(hours=2)))

    properties = TrackingProperties.from_application_properties({EXPECTED_COMPLETION_KEY: local})

    assert properties.expected_completion == T0
    assert properties.expected_completion.tzinfo == UTC


@pytest.mark.parametrize(
    "raw",
    [
        {EXPECTED_COMPLETION_KEY: "next tuesday", PERCENT_DONE_KEY: "half"},
        {EXPECTED_COMPLETION_KEY: "", PERCENT_DONE_KEY: True},
        {EXPECTED_COMPLETION_KEY: 1700000000, PERCENT_DONE_KEY: None},
        {},
        None,
    ],
)
def test_from_application_properties_treats_malformed_values_as_missing(raw) -> None:
    properties = TrackingProperties.from_application_properties(raw)

    assert properties == TrackingProperties()


def test_as_utc_treats_naive_values_as_utc() -> None:
    assert as_utc(datetime(2026, 3, 2, 9, 0)) == T0


def test_counters_track_in_flight_items_until_settled() -> None:
    counters = ServiceCounters()
    counters.accepted(1)
    counters.accepted(2)
    counters.accepted(3)

    counters.settled(1, Disposition.COMPLETED)
    counters.settled(2, Disposition.DEAD_LETTERED, by_watchdog=True)
    counters.withdrawn(3)

    summary = counters.snapshot()
    assert summary.received == 2
    assert summary.completed == 1
    assert summary.reaped == 1
    assert summary.dead_lettered == 0
    assert counters.in_flight() == 0


def test_counters_withdrawn_ignores_items_already_settled() -> None:
    counters = ServiceCounters()
    counters.accepted(7)
    counters.settled(7, Disposition.LOST_RACE)

    counters.withdrawn(7)

    summary = counters.snapshot()
    assert summary.received == 1
    assert summary.race_losses == 1


def test_snapshot_is_detached_from_live_counters() -> None:
    counters = ServiceCounters()
    snapshot = counters.snapshot()

    counters.add("errors", 2)

    assert snapshot.errors == 0
    assert counters.snapshot().errors == 2


def test_log_transition_renders_key_value_details(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("deferred_worker.tests")
    caplog.set_level(logging.DEBUG, logger="deferred_worker.tests")

    log_transition(
        logger,
        MessageEvent.PROGRESS,
        7,
        worker="worker-1",
        percent_done=100 / 6,
        expected_completion=T0,
    )
    log_transition(logger, MessageEvent.DEAD_LETTERED, 7, reason=MISSING_DEADLINE_REASON)
    log_transition(logger, MessageEvent.ERROR, None, error="")

    progress, dead_lettered, error = caplog.records
    assert progress.levelno == logging.INFO
    assert progress.getMessage() == (
        "event=progress seq=7 worker=worker-1 percent_done=16.7 "
        "expected_completion=2026-03-02T09:00:00+00:00"
    )
    assert dead_lettered.levelno == logging.WARNING
    assert dead_lettered.getMessage() == (
        "event=dead_lettered seq=7 reason='missing expected completion time'"
    )
    assert error.levelno == logging.ERROR
    assert error.getMessage() == "event=error seq=- error=''"
