"""
Telemetry Module
================

Observability for the metrics core.

Components:
- log_store.py: `app_log` capability + in-memory log console
- sentry.py: Error tracking

Environment Variables:
- SENTRY_DSN: Sentry project DSN (optional)

Usage:
    from subbuddy.telemetry import init_observability, app_log

    init_observability()
    app_log("Refresh started", "info", "Scheduler")
"""

from subbuddy.telemetry.log_store import (
    LogEntry,
    LogFn,
    LogLevel,
    LogStore,
    app_log,
    log_store,
)
from subbuddy.telemetry.sentry import capture_exception, init_sentry


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization: {"sentry": True/False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "LogEntry",
    "LogFn",
    "LogLevel",
    "LogStore",
    "app_log",
    "log_store",
]
