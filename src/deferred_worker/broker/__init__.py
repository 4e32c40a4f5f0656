"""Broker client interface and implementations."""

from deferred_worker.broker.base import (
    BrokerClient,
    ErrorHandler,
    MessageHandler,
    ReceivedMessage,
    Subscription,
)
from deferred_worker.broker.memory import DeadLetterRecord, InMemoryBroker

__all__ = [
    "BrokerClient",
    "DeadLetterRecord",
    "ErrorHandler",
    "InMemoryBroker",
    "MessageHandler",
    "ReceivedMessage",
    "Subscription",
]
