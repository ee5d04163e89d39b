"""
In-App Log Console
==================

Fire-and-forget logging capability shared by every core component.

WHAT:
- `app_log(message, level, category)` writes to the stdlib logger
  `subbuddy.<category>` with the usual `[CATEGORY]` prefix
- The same entry is appended to a bounded in-memory `LogStore` so the
  embedding UI can render a log console without tailing files

WHY:
- Components receive `log` as a constructor argument (defaulting to
  `app_log`) instead of reaching for module globals, so tests can capture
  exactly what a component reported

Related files:
- subbuddy/services/*.py: every service takes a `log` callable
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List

LogFn = Callable[..., None]

DEFAULT_MAX_ENTRIES = 1000


class LogLevel(str, Enum):
    debug = "DEBUG"
    info = "INFO"
    warning = "WARN"
    error = "ERROR"

    @classmethod
    def parse(cls, value: "str | LogLevel") -> "LogLevel":
        if isinstance(value, LogLevel):
            return value
        try:
            return cls[value.lower()]
        except KeyError:
            return cls(value.upper())

    @property
    def stdlib_level(self) -> int:
        return {
            LogLevel.debug: logging.DEBUG,
            LogLevel.info: logging.INFO,
            LogLevel.warning: logging.WARNING,
            LogLevel.error: logging.ERROR,
        }[self]


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    level: LogLevel
    category: str
    message: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class LogStore:
    """Bounded ring buffer of recent log entries (oldest dropped first)."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max_entries
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def add(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def entries(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)


log_store = LogStore()


def app_log(message: str, level: "str | LogLevel" = "info", category: str = "App") -> None:
    """Log to both the stdlib logger and the in-app LogStore console."""
    log_level = LogLevel.parse(level)
    logging.getLogger(f"subbuddy.{category}").log(
        log_level.stdlib_level, "[%s] %s", category.upper(), message
    )
    log_store.add(
        LogEntry(
            timestamp=datetime.now(timezone.utc),
            level=log_level,
            category=category,
            message=message,
        )
    )
