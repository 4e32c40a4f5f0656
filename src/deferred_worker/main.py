"""CLI entrypoint for deferred-worker."""

import sys

import rich_click as click

from deferred_worker import __version__
from deferred_worker.controllers import RunCommand, ServiceCliController

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ServiceCliController()


@click.group()
@click.version_option(version=__version__, prog_name="deferred-worker")
def deferred_worker() -> None:
    """Long-running queue consumer with progress deferral and a deadline watchdog."""


@deferred_worker.command("run")
@click.option(
    "--message",
    "messages",
    multiple=True,
    help="Message body to send before starting (memory backend only). Can be repeated.",
)
@click.option(
    "--exit-when-idle",
    is_flag=True,
    default=False,
    help="Stop once the queue is empty and every accepted item is settled.",
)
@click.option(
    "--expected-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help=(
        "Expected processing duration per item. "
        "Overrides DEFERRED_WORKER_EXPECTED_PROCESSING_SECONDS."
    ),
)
@click.option(
    "--slice-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Progress slice length. Overrides DEFERRED_WORKER_SLICE_SECONDS.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Worker pool size. Overrides DEFERRED_WORKER_WORKER_COUNT.",
)
@click.option(
    "--watchdog-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help=(
        "Seconds between watchdog scans. "
        "Overrides DEFERRED_WORKER_WATCHDOG_INTERVAL_SECONDS."
    ),
)
@click.option(
    "--peek-window",
    type=click.IntRange(min=1),
    default=None,
    help="Messages inspected per watchdog peek. Overrides DEFERRED_WORKER_PEEK_WINDOW.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging verbosity. Overrides DEFERRED_WORKER_LOG_LEVEL.",
)
def run(  # noqa: PLR0913
    messages: tuple[str, ...],
    exit_when_idle: bool,
    expected_seconds: float | None,
    slice_seconds: float | None,
    workers: int | None,
    watchdog_interval: float | None,
    peek_window: int | None,
    log_level: str | None,
) -> None:
    """Consume the queue until stopped, then exit with 0 (normal), 1 (error), or -1 (cancelled)."""

    try:
        result = CONTROLLER.run(
            RunCommand(
                messages=messages,
                exit_when_idle=exit_when_idle,
                expected_seconds=expected_seconds,
                slice_seconds=slice_seconds,
                workers=workers,
                watchdog_interval=watchdog_interval,
                peek_window=peek_window,
                log_level=log_level,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    sys.exit(int(result.exit_code))


@deferred_worker.command("settings")
def show_settings() -> None:
    """Print the effective configuration read from DEFERRED_WORKER_* variables."""

    try:
        lines = CONTROLLER.show_settings()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    deferred_worker()
