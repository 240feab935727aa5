"""
Structured JSONL logging for Agent Relay.

This module provides:
- JSONL event logging for debugging and audit trails
- Log files organized by session and date
- Log levels (debug, info, warn, error)
- Context manager for role-scoped logging
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from agent_relay.config import RelayConfig, get_config
from agent_relay.utils.fs import append_line


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class RelayLogger:
    """
    JSONL event logger for Agent Relay.

    Writes structured log entries to .relay/logs/<scope>-YYYY-MM-DD.jsonl
    where scope is a session id (or "relay" for process-level events).

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - session_id: Scope the logger was created for
    - data: Additional event data (dict)
    """

    def __init__(self, scope: str = "relay", config: Optional[RelayConfig] = None) -> None:
        """
        Initialize logger for a scope.

        Args:
            scope: Session id or other name used to organize log files.
            config: Optional config to use. If not provided, loads from config.yaml.
        """
        self.scope = scope
        self._config = config
        self._local = threading.local()
        self._lock = threading.Lock()

    @property
    def config(self) -> RelayConfig:
        """Get configuration (lazy load)."""
        if self._config is None:
            self._config = get_config()
        return self._config

    def _get_log_path(self, date: Optional[str] = None) -> Path:
        """Get the log file path for a date (default today)."""
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.config.logs_path / f"{self.scope}-{date}.jsonl"

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Write a log entry to the JSONL file."""
        with self._lock:
            append_line(self._get_log_path(), json.dumps(entry, default=str))

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "dispatch", "transition", "append_conflict").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "session_id": self.scope,
            "data": data or {},
        }

        role = getattr(self._local, "role", None)
        if role:
            entry["role"] = role

        self._write_entry(entry)

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a debug event."""
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an info event."""
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a warning event."""
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an error event."""
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def role_context(self, role: str) -> Iterator[RelayLogger]:
        """
        Context manager for role-scoped logging.

        Logs written by the current thread within this context include the
        role name; each worker thread keeps its own role.

        Example:
            with logger.role_context("ui-planner") as log:
                log.info("plan_registered", {"plan_type": "ui"})
        """
        old_role = getattr(self._local, "role", None)
        self._local.role = role
        try:
            yield self
        finally:
            self._local.role = old_role


# Module-level logger cache
_logger_cache: dict[str, RelayLogger] = {}


def get_logger(scope: str, config: Optional[RelayConfig] = None) -> RelayLogger:
    """
    Get or create a logger for a scope.

    Args:
        scope: Session id or other scope name.
        config: Optional config to use.

    Returns:
        RelayLogger instance for the scope.
    """
    if scope not in _logger_cache:
        _logger_cache[scope] = RelayLogger(scope, config)
    return _logger_cache[scope]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    global _logger_cache
    _logger_cache = {}
