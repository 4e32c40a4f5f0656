"""Error kinds raised by broker clients and the processing core."""

from __future__ import annotations


class DeferredWorkerError(RuntimeError):
    """Base class for all deferred-worker failures."""


class BrokerOperationError(DeferredWorkerError):
    """Network, auth, or broker-side failure of a queue operation."""

    def __init__(self, message: str, *, sequence_number: int | None = None) -> None:
        super().__init__(message)
        self.sequence_number = sequence_number


class MessageLockedError(BrokerOperationError):
    """The message exists but another receiver holds its lock, or it is not deferred yet."""


class LockLostError(BrokerOperationError):
    """Settlement attempted with a lock that expired or belongs to another receiver."""


class RaceLossError(DeferredWorkerError):
    """Another actor already completed or dead-lettered the message."""

    def __init__(self, sequence_number: int, message: str | None = None) -> None:
        super().__init__(message or f"Message {sequence_number} is no longer in the queue")
        self.sequence_number = sequence_number


class ProtocolViolation(DeferredWorkerError):
    """A deferred message lacks the deadline metadata written at ingestion."""

    def __init__(self, sequence_number: int, reason: str) -> None:
        super().__init__(f"Message {sequence_number}: {reason}")
        self.sequence_number = sequence_number
        self.reason = reason


class QueueClosedError(DeferredWorkerError):
    """Put attempted on a work queue that has been closed."""
