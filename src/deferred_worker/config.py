"""Runtime configuration for the broker connection, workers, and watchdog."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

ENV_PREFIX = "DEFERRED_WORKER_"

SUPPORTED_BROKER_BACKENDS = ("memory",)
SCAN_MODES = ("cursor", "window")


@dataclass(slots=True)
class BrokerSettings:
    """Queue identity and client behavior.

    ``connection_string`` is kept for network backends; the memory backend
    ignores it. It is still loaded and shown masked by :meth:`Settings.describe`.
    """

    backend: str = "memory"
    queue_name: str = "files"
    connection_string: str = ""
    max_concurrent_calls: int = 4
    lock_duration_seconds: float = 60.0
    max_delivery_count: int = 10


@dataclass(slots=True)
class ProcessingSettings:
    """Worker pool sizing and progress cadence."""

    expected_processing_seconds: float = 180.0
    slice_seconds: float = 30.0
    deadline_multiplier: float = 2.0
    worker_count: int = 3


@dataclass(slots=True)
class WatchdogSettings:
    """Deferred-message audit cadence and coverage."""

    interval_seconds: float = 30.0
    peek_window: int = 10
    scan_mode: str = "cursor"
    max_pages: int = 50


@dataclass(slots=True)
class RetrySettings:
    """Bounded retry for broker operations issued by workers."""

    max_attempts: int = 3
    base_seconds: float = 1.0
    max_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    broker: BrokerSettings = field(default_factory=BrokerSettings)
    processing: ProcessingSettings = field(default_factory=ProcessingSettings)
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``DEFERRED_WORKER_*`` variables with local-friendly defaults."""

        return cls(
            broker=BrokerSettings(
                backend=_env("BROKER_BACKEND", "memory").strip().lower(),
                queue_name=_env("QUEUE_NAME", "files").strip(),
                connection_string=_env("CONNECTION_STRING", "").strip(),
                max_concurrent_calls=int(_env("MAX_CONCURRENT_CALLS", "4")),
                lock_duration_seconds=float(_env("LOCK_DURATION_SECONDS", "60")),
                max_delivery_count=int(_env("MAX_DELIVERY_COUNT", "10")),
            ),
            processing=ProcessingSettings(
                expected_processing_seconds=float(_env("EXPECTED_PROCESSING_SECONDS", "180")),
                slice_seconds=float(_env("SLICE_SECONDS", "30")),
                deadline_multiplier=float(_env("DEADLINE_MULTIPLIER", "2.0")),
                worker_count=int(_env("WORKER_COUNT", "3")),
            ),
            watchdog=WatchdogSettings(
                interval_seconds=float(_env("WATCHDOG_INTERVAL_SECONDS", "30")),
                peek_window=int(_env("PEEK_WINDOW", "10")),
                scan_mode=_env("WATCHDOG_SCAN_MODE", "cursor").strip().lower(),
                max_pages=int(_env("WATCHDOG_MAX_PAGES", "50")),
            ),
            retry=RetrySettings(
                max_attempts=int(_env("RETRY_MAX_ATTEMPTS", "3")),
                base_seconds=float(_env("RETRY_BASE_SECONDS", "1.0")),
                max_seconds=float(_env("RETRY_MAX_SECONDS", "30.0")),
            ),
            log_level=_env("LOG_LEVEL", "INFO").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the service cannot run with."""

        if self.broker.backend not in SUPPORTED_BROKER_BACKENDS:
            raise ValueError(
                f"Unsupported {ENV_PREFIX}BROKER_BACKEND: {self.broker.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_BROKER_BACKENDS)}.",
            )
        if not self.broker.queue_name:
            raise ValueError(f"{ENV_PREFIX}QUEUE_NAME must not be empty.")
        _require_positive("MAX_CONCURRENT_CALLS", self.broker.max_concurrent_calls)
        _require_positive("LOCK_DURATION_SECONDS", self.broker.lock_duration_seconds)
        _require_positive("MAX_DELIVERY_COUNT", self.broker.max_delivery_count)

        _require_positive(
            "EXPECTED_PROCESSING_SECONDS",
            self.processing.expected_processing_seconds,
        )
        _require_positive("SLICE_SECONDS", self.processing.slice_seconds)
        _require_positive("WORKER_COUNT", self.processing.worker_count)
        if self.processing.deadline_multiplier < 1:
            raise ValueError(f"{ENV_PREFIX}DEADLINE_MULTIPLIER must be >= 1.")

        _require_positive("WATCHDOG_INTERVAL_SECONDS", self.watchdog.interval_seconds)
        _require_positive("PEEK_WINDOW", self.watchdog.peek_window)
        _require_positive("WATCHDOG_MAX_PAGES", self.watchdog.max_pages)
        if self.watchdog.scan_mode not in SCAN_MODES:
            raise ValueError(
                f"Invalid {ENV_PREFIX}WATCHDOG_SCAN_MODE: {self.watchdog.scan_mode!r}. "
                f"Expected one of: {', '.join(SCAN_MODES)}.",
            )

        _require_positive("RETRY_MAX_ATTEMPTS", self.retry.max_attempts)
        if self.retry.base_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError(
                f"{ENV_PREFIX}RETRY_MAX_SECONDS must be >= {ENV_PREFIX}RETRY_BASE_SECONDS.",
            )

    def describe(self) -> list[str]:
        """Render the effective settings with the credential masked."""

        return [
            f"Broker: backend={self.broker.backend} queue={self.broker.queue_name} "
            f"connection={mask_secret(self.broker.connection_string)} "
            f"max_concurrent_calls={self.broker.max_concurrent_calls} "
            f"lock_duration_seconds={self.broker.lock_duration_seconds:g} "
            f"max_delivery_count={self.broker.max_delivery_count}",
            f"Processing: expected_seconds={self.processing.expected_processing_seconds:g} "
            f"slice_seconds={self.processing.slice_seconds:g} "
            f"deadline_multiplier={self.processing.deadline_multiplier:g} "
            f"workers={self.processing.worker_count}",
            f"Watchdog: interval_seconds={self.watchdog.interval_seconds:g} "
            f"peek_window={self.watchdog.peek_window} scan_mode={self.watchdog.scan_mode} "
            f"max_pages={self.watchdog.max_pages}",
            f"Retry: max_attempts={self.retry.max_attempts} "
            f"base_seconds={self.retry.base_seconds:g} max_seconds={self.retry.max_seconds:g}",
        ]


def mask_secret(value: str) -> str:
    """Hide key material in a connection string while keeping the endpoint readable."""

    if not value:
        return "-"
    masked: list[str] = []
    for part in value.split(";"):
        key, sep, _ = part.partition("=")
        lowered = key.strip().lower()
        if sep and ("key" in lowered or "signature" in lowered):
            masked.append(f"{key}=*****")
        else:
            masked.append(part)
    return ";".join(masked)


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ValueError(f"{ENV_PREFIX}{name} must be > 0.")
