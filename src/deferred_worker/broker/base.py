"""Broker client interface consumed by the processing core."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from deferred_worker.models import MessageRecord, TrackingProperties


@dataclass(frozen=True, slots=True)
class ReceivedMessage:
    """Exclusive handle on a message, valid until settled or the lock expires."""

    sequence_number: int
    body: bytes | str
    lock_token: str
    properties: TrackingProperties
    delivery_count: int = 0


MessageHandler = Callable[[ReceivedMessage], None]
ErrorHandler = Callable[[BaseException], None]


class Subscription(Protocol):
    """Running push delivery started by :meth:`BrokerClient.subscribe`."""

    def close(self) -> None:
        """Stop delivering new messages and wait for in-progress handlers."""


class BrokerClient(Protocol):
    """Queue primitives required by ingestion, workers, and the watchdog.

    Implementations raise :class:`~deferred_worker.errors.BrokerOperationError`
    for transport failures and :class:`~deferred_worker.errors.RaceLossError`
    when the target message was already completed or dead-lettered.
    """

    def subscribe(self, on_message: MessageHandler, on_error: ErrorHandler) -> Subscription:
        """Start concurrent push delivery of newly visible messages."""

    def peek(
        self,
        max_count: int,
        from_sequence_number: int | None = None,
    ) -> list[MessageRecord]:
        """Snapshot up to ``max_count`` messages ordered by sequence number, without locking."""

    def receive_deferred(self, sequence_number: int) -> ReceivedMessage:
        """Acquire an exclusive lock on a deferred message."""

    def defer(self, message: ReceivedMessage, properties: TrackingProperties | None = None) -> None:
        """Mark deferred and merge ``properties``; fields left unset are preserved."""

    def complete(self, message: ReceivedMessage) -> None:
        """Remove the message permanently."""

    def dead_letter(
        self,
        message: ReceivedMessage,
        reason: str,
        description: str | None = None,
    ) -> None:
        """Move the message to the dead-letter side queue with ``reason``."""

    def close(self) -> None:
        """Release connections held by the client."""
