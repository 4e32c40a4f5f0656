"""Shared test fixtures."""

from __future__ import annotations

import pytest
from fakes import FakeClock

from deferred_worker.broker.memory import InMemoryBroker


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def broker(clock: FakeClock):
    broker = InMemoryBroker(queue_name="files", clock=clock)
    yield broker
    broker.close()
