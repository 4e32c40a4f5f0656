"""Structured log entries for message state transitions."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum


class MessageEvent(str, Enum):
    """Transitions a message goes through while owned by this process."""

    RECEIVED = "received"
    DEFERRED = "deferred"
    PROGRESS = "progress"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"
    ABANDONED = "abandoned"
    RACE_LOST = "race_lost"
    ERROR = "error"


_LEVELS = {
    MessageEvent.ABANDONED: logging.WARNING,
    MessageEvent.DEAD_LETTERED: logging.WARNING,
    MessageEvent.ERROR: logging.ERROR,
}


def log_transition(
    logger: logging.Logger,
    event: MessageEvent,
    sequence_number: int | None,
    *,
    exc_info: BaseException | None = None,
    **details: object,
) -> None:
    """Emit one ``event=<name> seq=<n> key=value`` entry."""

    level = _LEVELS.get(event, logging.INFO)
    if not logger.isEnabledFor(level):
        return
    seq = "-" if sequence_number is None else str(sequence_number)
    parts = [f"event={event.value}", f"seq={seq}"]
    parts.extend(f"{key}={_render(value)}" for key, value in details.items())
    logger.log(level, " ".join(parts), exc_info=exc_info)


def _render(value: object) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float):
        return f"{value:.1f}"
    text = str(value)
    if not text or any(char.isspace() for char in text):
        return repr(text)
    return text
