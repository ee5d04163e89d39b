"""User settings persistence (projects, currency, refresh interval, selected tab)."""

from __future__ import annotations

import os
import threading
from pathlib import Path

from pydantic import ValidationError

from subbuddy.schemas import AppSettings
from subbuddy.telemetry import LogFn, app_log

CATEGORY = "Settings"


class SettingsStore:
    """AppSettings document stored as JSON.

    A missing or invalid file loads as defaults; the invalid file is left
    in place so it can be inspected.
    """

    def __init__(self, path: Path, log: LogFn = app_log):
        self.path = Path(path)
        self._log = log
        self._lock = threading.Lock()

    def load(self) -> AppSettings:
        with self._lock:
            if not self.path.exists():
                return AppSettings()
            try:
                return AppSettings.model_validate_json(self.path.read_text(encoding="utf-8"))
            except (OSError, ValidationError, ValueError) as e:
                self._log(f"Settings file invalid, using defaults: {e}", "error", CATEGORY)
                return AppSettings()

    def save(self, settings: AppSettings) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        self._log(
            f"Saved settings: {len(settings.projects)} project(s), {settings.currency}, "
            f"every {settings.refresh_interval} min",
            "debug",
            CATEGORY,
        )
