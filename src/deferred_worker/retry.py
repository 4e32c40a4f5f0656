"""Bounded retry with exponential backoff for broker operations."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from deferred_worker.errors import BrokerOperationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryInterrupted(BrokerOperationError):
    """Stop was requested while waiting for the next attempt."""


@dataclass(slots=True)
class RetryPolicy:
    """Attempt budget and backoff bounds."""

    max_attempts: int = 3
    base_seconds: float = 1.0
    max_seconds: float = 30.0

    def delay_for(self, retry_number: int, rng: random.Random) -> float:
        """Full-jitter exponential delay before retry ``retry_number`` (1-based)."""

        max_delay = min(
            self.max_seconds,
            self.base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return rng.uniform(0, max_delay)


class Retrier:
    """Runs an operation, retrying :class:`BrokerOperationError` within the policy.

    Non-broker errors and :class:`~deferred_worker.errors.RaceLossError`
    propagate immediately: they are not transient.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        stop_event: threading.Event | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy
        self._stop_event = stop_event or threading.Event()
        self._random = rng or random.Random()  # noqa: S311

    def call(self, operation: Callable[[], T], *, description: str) -> T:
        attempt = 1
        while True:
            try:
                return operation()
            except RetryInterrupted:
                raise
            except BrokerOperationError as error:
                if attempt >= self.policy.max_attempts:
                    raise
                delay = self.policy.delay_for(attempt, self._random)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    description,
                    attempt,
                    self.policy.max_attempts,
                    error,
                    delay,
                )
                if self._stop_event.wait(timeout=delay):
                    raise RetryInterrupted(
                        f"{description} interrupted by shutdown",
                        sequence_number=error.sequence_number,
                    ) from error
                attempt += 1
