"""Long-running queue consumer with progress deferral and a deadline watchdog."""

__version__ = "0.1.0"
