"""Thread-safe in-process broker with peek-lock, deferral, and dead-letter semantics.

Used by the test suite and by ``deferred-worker run`` when
``DEFERRED_WORKER_BROKER_BACKEND=memory``. It follows the settlement rules the
processing core relies on: one lock per sequence number, lock tokens that
expire, clean failures on messages that were already finalized, and
redelivery with a delivery-count limit for handlers that raise.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from deferred_worker.broker.base import ErrorHandler, MessageHandler, ReceivedMessage
from deferred_worker.errors import (
    BrokerOperationError,
    LockLostError,
    MessageLockedError,
    RaceLossError,
)
from deferred_worker.models import MessageRecord, MessageState, TrackingProperties, utc_now

logger = logging.getLogger(__name__)

MAX_DELIVERY_COUNT_REASON = "MaxDeliveryCountExceeded"


@dataclass(slots=True)
class _StoredMessage:
    sequence_number: int
    body: bytes | str
    state: MessageState
    application_properties: dict[str, Any]
    enqueued_at: datetime
    delivery_count: int = 0
    lock_token: str | None = None
    locked_until: datetime | None = None


@dataclass(frozen=True, slots=True)
class DeadLetterRecord:
    """Message moved to the dead-letter side queue."""

    sequence_number: int
    body: bytes | str
    reason: str
    description: str | None
    properties: TrackingProperties
    dead_lettered_at: datetime


class InMemoryBroker:
    """Single-queue broker kept in process memory."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue_name: str = "files",
        lock_duration_seconds: float = 60.0,
        max_delivery_count: int = 10,
        max_concurrent_calls: int = 4,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue_name = queue_name
        self.lock_duration = timedelta(seconds=lock_duration_seconds)
        self.max_delivery_count = max_delivery_count
        self.max_concurrent_calls = max_concurrent_calls
        self._clock = clock
        self._messages: dict[int, _StoredMessage] = {}
        self._completed: list[int] = []
        self._dead_letters: list[DeadLetterRecord] = []
        self._next_sequence_number = 1
        self._closed = False
        self._subscriptions: list[_Subscription] = []
        self._changed = threading.Condition()

    # -- producer / inspection ----------------------------------------------

    def send(
        self,
        body: bytes | str,
        application_properties: dict[str, Any] | None = None,
    ) -> int:
        """Enqueue a new active message and return its sequence number."""

        with self._changed:
            self._ensure_open()
            sequence_number = self._next_sequence_number
            self._next_sequence_number += 1
            self._messages[sequence_number] = _StoredMessage(
                sequence_number=sequence_number,
                body=body,
                state=MessageState.ACTIVE,
                application_properties=dict(application_properties or {}),
                enqueued_at=self._clock(),
            )
            self._changed.notify_all()
        logger.debug("Queue %s accepted message %d", self.queue_name, sequence_number)
        return sequence_number

    def receive(self, max_count: int = 1) -> list[ReceivedMessage]:
        """Pull-receive up to ``max_count`` active messages under peek-lock."""

        with self._changed:
            self._ensure_open()
            received: list[ReceivedMessage] = []
            while len(received) < max_count:
                stored = self._next_deliverable()
                if stored is None:
                    break
                received.append(self._lock_for_delivery(stored))
            return received

    def get(self, sequence_number: int) -> MessageRecord | None:
        with self._changed:
            stored = self._messages.get(sequence_number)
            return None if stored is None else _record(stored)

    def dead_letters(self) -> list[DeadLetterRecord]:
        with self._changed:
            return list(self._dead_letters)

    def completed(self) -> list[int]:
        with self._changed:
            return list(self._completed)

    # -- BrokerClient ---------------------------------------------------------

    def subscribe(self, on_message: MessageHandler, on_error: ErrorHandler) -> _Subscription:
        with self._changed:
            self._ensure_open()
            subscription = _Subscription(
                broker=self,
                on_message=on_message,
                on_error=on_error,
                max_concurrent_calls=self.max_concurrent_calls,
            )
            self._subscriptions.append(subscription)
        subscription.start()
        return subscription

    def peek(
        self,
        max_count: int,
        from_sequence_number: int | None = None,
    ) -> list[MessageRecord]:
        with self._changed:
            self._ensure_open()
            start = from_sequence_number or 0
            numbers = sorted(number for number in self._messages if number >= start)
            return [_record(self._messages[number]) for number in numbers[:max_count]]

    def receive_deferred(self, sequence_number: int) -> ReceivedMessage:
        with self._changed:
            self._ensure_open()
            stored = self._messages.get(sequence_number)
            if stored is None:
                raise self._missing(sequence_number)
            if stored.state is not MessageState.DEFERRED:
                raise MessageLockedError(
                    f"Message {sequence_number} is not deferred",
                    sequence_number=sequence_number,
                )
            if self._is_locked(stored):
                raise MessageLockedError(
                    f"Message {sequence_number} is locked by another receiver",
                    sequence_number=sequence_number,
                )
            return self._lock(stored)

    def defer(self, message: ReceivedMessage, properties: TrackingProperties | None = None) -> None:
        with self._changed:
            stored = self._settleable(message)
            stored.state = MessageState.DEFERRED
            merged = _tracking(stored).merged(properties)
            stored.application_properties.update(merged.to_application_properties())
            self._unlock(stored)
            self._changed.notify_all()

    def complete(self, message: ReceivedMessage) -> None:
        with self._changed:
            stored = self._settleable(message)
            del self._messages[stored.sequence_number]
            self._completed.append(stored.sequence_number)
            self._changed.notify_all()

    def dead_letter(
        self,
        message: ReceivedMessage,
        reason: str,
        description: str | None = None,
    ) -> None:
        with self._changed:
            stored = self._settleable(message)
            self._move_to_dead_letter(stored, reason=reason, description=description)

    def abandon(self, message: ReceivedMessage) -> None:
        """Release the lock so the message is delivered again."""

        with self._changed:
            stored = self._settleable(message)
            self._unlock(stored)
            if stored.delivery_count >= self.max_delivery_count:
                self._move_to_dead_letter(
                    stored,
                    reason=MAX_DELIVERY_COUNT_REASON,
                    description=f"Delivered {stored.delivery_count} times",
                )
                return
            self._changed.notify_all()

    def close(self) -> None:
        with self._changed:
            if self._closed:
                return
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()
        with self._changed:
            self._closed = True
            self._changed.notify_all()
        logger.debug("Queue %s client closed", self.queue_name)

    # -- internals (call with self._changed held) ----------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise BrokerOperationError(f"Client for queue {self.queue_name} is closed")

    def _missing(self, sequence_number: int) -> Exception:
        if sequence_number in self._completed or any(
            record.sequence_number == sequence_number for record in self._dead_letters
        ):
            return RaceLossError(sequence_number)
        return BrokerOperationError(
            f"No message with sequence number {sequence_number}",
            sequence_number=sequence_number,
        )

    def _is_locked(self, stored: _StoredMessage) -> bool:
        if stored.lock_token is None or stored.locked_until is None:
            return False
        if stored.locked_until <= self._clock():
            self._unlock(stored)
            return False
        return True

    def _lock(self, stored: _StoredMessage) -> ReceivedMessage:
        stored.lock_token = uuid4().hex
        stored.locked_until = self._clock() + self.lock_duration
        return ReceivedMessage(
            sequence_number=stored.sequence_number,
            body=stored.body,
            lock_token=stored.lock_token,
            properties=_tracking(stored),
            delivery_count=stored.delivery_count,
        )

    def _lock_for_delivery(self, stored: _StoredMessage) -> ReceivedMessage:
        stored.delivery_count += 1
        return self._lock(stored)

    def _unlock(self, stored: _StoredMessage) -> None:
        stored.lock_token = None
        stored.locked_until = None

    def _next_deliverable(self) -> _StoredMessage | None:
        for number in sorted(self._messages):
            stored = self._messages[number]
            if stored.state is MessageState.ACTIVE and not self._is_locked(stored):
                return stored
        return None

    def _settleable(self, message: ReceivedMessage) -> _StoredMessage:
        self._ensure_open()
        stored = self._messages.get(message.sequence_number)
        if stored is None:
            raise self._missing(message.sequence_number)
        if stored.lock_token != message.lock_token or not self._is_locked(stored):
            raise LockLostError(
                f"Lock on message {message.sequence_number} was lost",
                sequence_number=message.sequence_number,
            )
        return stored

    def _move_to_dead_letter(
        self,
        stored: _StoredMessage,
        *,
        reason: str,
        description: str | None,
    ) -> None:
        del self._messages[stored.sequence_number]
        self._dead_letters.append(
            DeadLetterRecord(
                sequence_number=stored.sequence_number,
                body=stored.body,
                reason=reason,
                description=description,
                properties=_tracking(stored),
                dead_lettered_at=self._clock(),
            ),
        )
        self._changed.notify_all()


class _Subscription:
    """Dispatcher thread feeding a bounded pool of handler threads."""

    def __init__(
        self,
        *,
        broker: InMemoryBroker,
        on_message: MessageHandler,
        on_error: ErrorHandler,
        max_concurrent_calls: int,
    ) -> None:
        self._broker = broker
        self._on_message = on_message
        self._on_error = on_error
        self._slots = threading.BoundedSemaphore(max_concurrent_calls)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_calls,
            thread_name_prefix=f"{broker.queue_name}-delivery",
        )
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._dispatch_loop,
            daemon=True,
            name=f"{broker.queue_name}-dispatcher",
        )

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        with self._broker._changed:  # noqa: SLF001
            self._broker._changed.notify_all()  # noqa: SLF001
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=10)
        self._executor.shutdown(wait=True)

    def _dispatch_loop(self) -> None:
        broker = self._broker
        while not self._stop.is_set():
            if not self._slots.acquire(timeout=0.1):
                continue
            with broker._changed:  # noqa: SLF001
                message = None
                while not self._stop.is_set() and not broker._closed:  # noqa: SLF001
                    stored = broker._next_deliverable()  # noqa: SLF001
                    if stored is not None:
                        message = broker._lock_for_delivery(stored)  # noqa: SLF001
                        break
                    broker._changed.wait(timeout=0.1)  # noqa: SLF001
            if message is None:
                self._slots.release()
                return
            self._executor.submit(self._deliver, message)

    def _deliver(self, message: ReceivedMessage) -> None:
        try:
            self._on_message(message)
        except Exception as error:  # noqa: BLE001
            self._on_error(error)
            self._settle_quietly(self._broker.abandon, message)
        else:
            self._settle_quietly(self._broker.complete, message)
        finally:
            self._slots.release()

    def _settle_quietly(
        self,
        settle: Callable[[ReceivedMessage], None],
        message: ReceivedMessage,
    ) -> None:
        # Handlers usually settle the message themselves; a second settlement
        # fails with LockLostError, which is expected here.
        try:
            settle(message)
        except (LockLostError, RaceLossError):
            return
        except BrokerOperationError as error:
            self._on_error(error)


def _tracking(stored: _StoredMessage) -> TrackingProperties:
    return TrackingProperties.from_application_properties(stored.application_properties)


def _record(stored: _StoredMessage) -> MessageRecord:
    return MessageRecord(
        sequence_number=stored.sequence_number,
        state=stored.state,
        properties=_tracking(stored),
        delivery_count=stored.delivery_count,
        enqueued_at=stored.enqueued_at,
    )
