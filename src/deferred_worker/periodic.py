"""Cancellable fixed-rate task that never runs two ticks at once."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``callback`` every ``interval_seconds`` on a dedicated thread.

    Ticks are scheduled at a fixed rate from the start time. A tick that
    overruns its slot causes the missed slots to be skipped, so ticks are
    serialized. Exceptions raised by ``callback`` are logged and the schedule
    continues.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_seconds: float,
        callback: Callable[[], object],
        run_immediately: bool = True,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Periodic task {self.name} already started")
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()
        logger.info("Periodic task %s started (interval=%.1fs)", self.name, self.interval_seconds)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Cancel future ticks and wait for a tick in progress to finish."""

        self._stop.set()
        thread = self._thread
        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        logger.info("Periodic task %s stopped after %d ticks", self.name, self.ticks)

    def _loop(self) -> None:
        next_run = time.monotonic()
        if not self._run_immediately:
            next_run += self.interval_seconds
        while not self._stop.wait(timeout=max(0.0, next_run - time.monotonic())):
            self._tick()
            next_run += self.interval_seconds
            now = time.monotonic()
            if now > next_run:
                missed = int((now - next_run) // self.interval_seconds) + 1
                self.skipped += missed
                next_run += missed * self.interval_seconds
                logger.warning(
                    "Periodic task %s overran its interval; skipping %d tick(s)",
                    self.name,
                    missed,
                )

    def _tick(self) -> None:
        self.ticks += 1
        try:
            self._callback()
        except Exception:
            logger.exception("Periodic task %s tick failed", self.name)
