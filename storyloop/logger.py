"""
Structured JSONL logging for Storyloop.

Every project gets its own append-only event log under
.storyloop/logs/<project>-YYYY-MM-DD.jsonl. Components take an optional
StoryloopLogger and emit through a private _log helper so that running
without a logger (tests, library use) stays silent.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from storyloop.config import StoryloopConfig, get_config


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class StoryloopLogger:
    """
    JSONL event logger scoped to one project.

    Each entry carries timestamp, level, event_type, project_id and data.
    Entries written inside record_context() also carry the id of the
    execution record that was open at the time.
    """

    def __init__(self, project_id: str, config: Optional[StoryloopConfig] = None) -> None:
        self.project_id = project_id
        self._config = config
        self._record_id: Optional[str] = None

    @property
    def config(self) -> StoryloopConfig:
        """Get configuration (lazy load)."""
        if self._config is None:
            self._config = get_config()
        return self._config

    def _log_path(self, date: Optional[str] = None) -> Path:
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.config.logs_path / f"{self.project_id}-{date}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """Append one event to today's log file."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "project_id": self.project_id,
            "data": data or {},
        }
        if self._record_id:
            entry["record_id"] = self._record_id

        log_path = self._log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def record_context(self, record_id: str) -> Iterator[StoryloopLogger]:
        """
        Tag every entry written inside the block with an execution record id.

        Example:
            with logger.record_context(record.id):
                logger.info("tasks_generated", {"count": 4})
        """
        previous = self._record_id
        self._record_id = record_id
        try:
            yield self
        finally:
            self._record_id = previous

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        record_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            date: Date string (YYYY-MM-DD) to read. If None, reads today's logs.
            level: Filter by log level.
            event_type: Filter by event type.
            record_id: Filter by execution record id.
            limit: Maximum number of entries to return.
        """
        log_path = self._log_path(date)
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if record_id and entry.get("record_id") != record_id:
                    continue

                entries.append(entry)
                if limit and len(entries) >= limit:
                    break

        return entries


_logger_cache: dict[tuple[str, str], StoryloopLogger] = {}


def get_logger(project_id: str, config: Optional[StoryloopConfig] = None) -> StoryloopLogger:
    """Get or create the logger for a project under a config's log directory."""
    key = (str(config.logs_path) if config is not None else "", project_id)
    if key not in _logger_cache:
        _logger_cache[key] = StoryloopLogger(project_id, config)
    return _logger_cache[key]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    global _logger_cache
    _logger_cache = {}
