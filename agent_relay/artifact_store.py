"""
Artifact persistence for Agent Relay.

This module handles:
- Create-or-overwrite JSON documents at .relay/store/<key>.json
- Append-only JSONL logs at .relay/store/<key>.jsonl
- Atomic writes so no document is ever partially visible
- Optimistic append check using the log's entry count
- Lock acquisition with a caller-supplied timeout

Keys are "/"-separated names such as ``sessions/<id>/plans/ui/checkout``.
The store is the single source of truth shared by every role; nothing is
held in memory between calls.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Optional

from filelock import FileLock, Timeout

from agent_relay.errors import (
    ArtifactNotFoundError,
    ConcurrentAppendConflict,
    InvalidKeyError,
    StoreError,
    StoreTimeoutError,
)
from agent_relay.utils.fs import FileSystemError, ensure_dir, read_file, safe_write

if TYPE_CHECKING:
    from agent_relay.config import RelayConfig
    from agent_relay.logger import RelayLogger


_SEGMENT = re.compile(r"^[A-Za-z0-9._:-]+$")

DOCUMENT_SUFFIX = ".json"
LOG_SUFFIX = ".jsonl"


class ArtifactStore:
    """
    File-backed artifact store.

    Storage structure:
    <root>/
    ├── sessions/<id>/session.json           # document
    ├── sessions/<id>/context.jsonl          # append-only log
    ├── sessions/<id>/context.jsonl.lock     # lock guarding appends
    ├── sessions/<id>/plans/<type>/<name>.json
    └── sessions/<id>/reports/<report_id>.json
    """

    def __init__(
        self,
        root: str | Path,
        logger: Optional[RelayLogger] = None,
        lock_timeout: float = 10.0,
    ) -> None:
        """
        Initialize the store.

        Args:
            root: Directory holding all artifacts.
            logger: Optional logger for recording operations.
            lock_timeout: Default seconds to wait for a log lock.
        """
        self.root = Path(root)
        self._logger = logger
        self._lock_timeout = lock_timeout

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "artifact_store"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    # Key handling

    @staticmethod
    def validate_key(key: str) -> list[str]:
        """
        Split and validate a key.

        Raises:
            InvalidKeyError: If the key is empty or has unsafe segments.
        """
        if not key:
            raise InvalidKeyError("artifact key must not be empty")
        segments = key.split("/")
        for segment in segments:
            if not segment or segment in (".", "..") or not _SEGMENT.match(segment):
                raise InvalidKeyError(f"invalid artifact key: {key!r}")
        return segments

    def _document_path(self, key: str) -> Path:
        self.validate_key(key)
        return self.root / f"{key}{DOCUMENT_SUFFIX}"

    def _log_path(self, log_key: str) -> Path:
        self.validate_key(log_key)
        return self.root / f"{log_key}{LOG_SUFFIX}"

    def _lock_path(self, log_key: str) -> Path:
        path = self._log_path(log_key)
        return path.with_name(f"{path.name}.lock")

    # Documents

    def put(self, key: str, document: dict[str, Any]) -> None:
        """
        Create or overwrite a document atomically.

        Args:
            key: Artifact key.
            document: JSON-serializable mapping.

        Raises:
            StoreError: If the write fails.
        """
        path = self._document_path(key)
        try:
            safe_write(path, json.dumps(document, indent=2))
        except (FileSystemError, TypeError, ValueError) as e:
            self._log("artifact_put_error", {"key": key, "error": str(e)}, level="error")
            raise StoreError(f"Failed to write artifact {key}: {e}")

        self._log("artifact_put", {"key": key}, level="debug")

    def get(self, key: str) -> dict[str, Any]:
        """
        Load a document.

        Raises:
            ArtifactNotFoundError: If no document exists under ``key``.
            StoreError: If the document cannot be read or decoded.
        """
        path = self._document_path(key)
        if not path.is_file():
            raise ArtifactNotFoundError(key)

        try:
            return json.loads(read_file(path))
        except json.JSONDecodeError as e:
            self._log("artifact_corrupted", {"key": key, "error": str(e)}, level="error")
            raise StoreError(f"Artifact {key} is not valid JSON: {e}")
        except FileSystemError as e:
            raise StoreError(f"Failed to read artifact {key}: {e}")

    def exists(self, key: str) -> bool:
        """Check whether a document exists."""
        return self._document_path(key).is_file()

    def list(self, prefix: str = "") -> list[str]:
        """
        List document keys starting with ``prefix``.

        Returns:
            Sorted list of keys (without the .json suffix).
        """
        if not self.root.is_dir():
            return []

        keys = []
        for path in self.root.rglob(f"*{DOCUMENT_SUFFIX}"):
            if path.name.startswith(".") or not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()[: -len(DOCUMENT_SUFFIX)]
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    # Append-only logs

    def append(
        self,
        log_key: str,
        entry: dict[str, Any],
        expected_length: int,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Append one entry to a log if nobody appended since the caller read it.

        Args:
            log_key: Key of the log.
            entry: JSON-serializable mapping.
            expected_length: Entry count the caller last observed.
            timeout: Seconds to wait for the lock (defaults to the store's).

        Returns:
            The new length of the log.

        Raises:
            ConcurrentAppendConflict: If the log length differs from ``expected_length``.
            StoreTimeoutError: If the lock is not acquired in time.
            StoreError: If the write fails.
        """
        path = self._log_path(log_key)
        wait = self._lock_timeout if timeout is None else timeout

        try:
            line = json.dumps(entry)
            ensure_dir(path.parent)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Entry for {log_key} is not serializable: {e}")
        except FileSystemError as e:
            raise StoreError(str(e))

        try:
            with FileLock(str(self._lock_path(log_key)), timeout=wait):
                actual = self._count_and_repair(path)
                if actual != expected_length:
                    self._log("append_conflict", {
                        "log_key": log_key,
                        "expected": expected_length,
                        "actual": actual,
                    }, level="warn")
                    raise ConcurrentAppendConflict(log_key, expected_length, actual)

                with open(path, "ab") as f:
                    f.write(line.encode("utf-8") + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

        except Timeout:
            self._log("append_lock_timeout", {"log_key": log_key, "timeout": wait}, level="error")
            raise StoreTimeoutError(f"Timed out after {wait}s waiting for lock on {log_key}")
        except OSError as e:
            raise StoreError(f"Failed to append to {log_key}: {e}")

        self._log("log_appended", {"log_key": log_key, "length": actual + 1}, level="debug")
        return actual + 1

    def _count_and_repair(self, path: Path) -> int:
        """
        Count complete entries, dropping a torn trailing line.

        Called with the log lock held.
        """
        if not path.exists():
            return 0

        content = path.read_bytes()
        if content and not content.endswith(b"\n"):
            keep = content.rfind(b"\n") + 1
            with open(path, "r+b") as f:
                f.truncate(keep)
            self._log("log_tail_repaired", {"path": str(path), "dropped_bytes": len(content) - keep},
                      level="warn")
            content = content[:keep]
        return content.count(b"\n")

    def log_exists(self, log_key: str) -> bool:
        """Check whether a log has been created."""
        return self._log_path(log_key).is_file()

    def log_length(self, log_key: str) -> int:
        """Number of complete entries in a log (0 if it does not exist)."""
        path = self._log_path(log_key)
        if not path.exists():
            return 0
        return path.read_bytes().count(b"\n")

    def read_log(self, log_key: str, limit: Optional[int] = None) -> Iterator[dict[str, Any]]:
        """
        Iterate over log entries in append order.

        Args:
            log_key: Key of the log.
            limit: Stop after this many entries. Passing the length observed
                   earlier replays exactly that snapshot.

        Yields:
            Decoded entries.

        Raises:
            StoreError: If a complete line is not valid JSON.
        """
        path = self._log_path(log_key)
        if not path.exists():
            return

        count = 0
        with open(path, "rb") as f:
            for raw in f:
                if limit is not None and count >= limit:
                    return
                if not raw.endswith(b"\n"):
                    # Torn tail from an interrupted writer; not part of the log
                    return
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError as e:
                    raise StoreError(f"Corrupted entry {count} in {log_key}: {e}")
                count += 1


# Module-level store cache keyed by store root
_store_cache: dict[str, ArtifactStore] = {}


def get_store(
    config: RelayConfig,
    logger: Optional[RelayLogger] = None
) -> ArtifactStore:
    """
    Get an ArtifactStore instance for the given config.

    Uses a simple cache keyed by the store root.

    Args:
        config: RelayConfig with paths configured.
        logger: Optional logger for recording operations.

    Returns:
        ArtifactStore instance.
    """
    key = str(config.store_path)
    if key not in _store_cache:
        _store_cache[key] = ArtifactStore(
            config.store_path,
            logger=logger,
            lock_timeout=config.timeouts.store_lock_seconds,
        )
    return _store_cache[key]


def clear_store_cache() -> None:
    """Clear the store cache. Useful for testing."""
    global _store_cache
    _store_cache = {}
