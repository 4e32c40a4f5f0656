"""Controllers for CLI commands."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, replace

from deferred_worker.broker.memory import InMemoryBroker
from deferred_worker.config import Settings
from deferred_worker.models import ExitCode
from deferred_worker.service import DeferralService, build_broker

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


@dataclass(slots=True)
class RunCommand:
    """CLI input for a service run."""

    messages: tuple[str, ...] = ()
    exit_when_idle: bool = False
    expected_seconds: float | None = None
    slice_seconds: float | None = None
    workers: int | None = None
    watchdog_interval: float | None = None
    peek_window: int | None = None
    log_level: str | None = None


@dataclass(slots=True)
class RunResult:
    """Summary lines and process exit status of a service run."""

    lines: list[str]
    exit_code: ExitCode


class ServiceCliController:
    """Builds settings, broker, and service for CLI commands."""

    def run(self, command: RunCommand) -> RunResult:
        settings = _apply_overrides(Settings.from_env(), command)
        settings.validate()
        configure_logging(settings.log_level)

        broker = build_broker(settings)
        if command.messages:
            if not isinstance(broker, InMemoryBroker):
                raise ValueError(
                    f"Seeding messages is only supported by the memory backend, "
                    f"not {settings.broker.backend!r}",
                )
            for body in command.messages:
                broker.send(body)

        service = DeferralService(broker=broker, settings=settings)
        exit_code = service.run(exit_when_idle=command.exit_when_idle)
        summary = service.summary()
        return RunResult(
            lines=[
                "Service summary: "
                f"received={summary.received} completed={summary.completed} "
                f"dead_lettered={summary.dead_lettered} reaped={summary.reaped} "
                f"abandoned={summary.abandoned} race_losses={summary.race_losses} "
                f"errors={summary.errors} watchdog_ticks={summary.watchdog_ticks}",
                f"Exit code: {exit_code.value}",
            ],
            exit_code=exit_code,
        )

    def show_settings(self) -> list[str]:
        settings = Settings.from_env()
        settings.validate()
        return settings.describe()


def configure_logging(level: str) -> None:
    """Configure root logging once for CLI runs."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stderr,
    )


def _apply_overrides(settings: Settings, command: RunCommand) -> Settings:
    processing = settings.processing
    if command.expected_seconds is not None:
        processing = replace(processing, expected_processing_seconds=command.expected_seconds)
    if command.slice_seconds is not None:
        processing = replace(processing, slice_seconds=command.slice_seconds)
    if command.workers is not None:
        processing = replace(processing, worker_count=command.workers)

    watchdog = settings.watchdog
    if command.watchdog_interval is not None:
        watchdog = replace(watchdog, interval_seconds=command.watchdog_interval)
    if command.peek_window is not None:
        watchdog = replace(watchdog, peek_window=command.peek_window)

    return replace(
        settings,
        processing=processing,
        watchdog=watchdog,
        log_level=(command.log_level or settings.log_level).upper(),
    )
