"""
Session Context Manager for Agent Relay.

This module handles:
- Session creation and lookup (one record per task)
- The append-only context log of every session
- Optimistic appends: a writer must have seen the latest entry
- Rejection of stale writers still appending to a superseded phase
- Phase derivation from coordinator transition entries

Context Log Lifecycle:
1. create() - write the session record
2. read() - take a replayable snapshot of the log
3. append() - add one entry on top of the snapshot the caller read
4. current_phase() - phase of the latest coordinator transition

Entries are never edited or removed; the log only grows.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Iterator, Optional

from agent_relay.errors import (
    ArtifactNotFoundError,
    ConcurrentAppendConflict,
    SessionExistsError,
    SessionNotFoundError,
    StalePhaseError,
)
from agent_relay.models import ContextEntry, EntryKind, Phase, SessionRecord

if TYPE_CHECKING:
    from agent_relay.artifact_store import ArtifactStore
    from agent_relay.logger import RelayLogger


SESSIONS_PREFIX = "sessions"


def session_key(session_id: str) -> str:
    """Store key of a session record."""
    return f"{SESSIONS_PREFIX}/{session_id}/session"


def context_key(session_id: str) -> str:
    """Store key of a session's context log."""
    return f"{SESSIONS_PREFIX}/{session_id}/context"


class ContextLog:
    """
    Lazy, replayable view of a context log.

    Bound to the length the log had when it was read: iterating yields
    exactly those entries every time, even if the log has grown since.
    Iterating never consumes or mutates anything.
    """

    def __init__(self, store: ArtifactStore, session_id: str, length: int) -> None:
        self._store = store
        self.session_id = session_id
        self._length = length

    def __len__(self) -> int:
        return self._length

    def __iter__(self) -> Iterator[ContextEntry]:
        key = context_key(self.session_id)
        for seq, data in enumerate(self._store.read_log(key, limit=self._length)):
            yield ContextEntry.from_dict(data).with_seq(seq)

    def __repr__(self) -> str:
        return f"ContextLog(session_id={self.session_id!r}, length={self._length})"

    def entries(self) -> list[ContextEntry]:
        """Materialize the snapshot."""
        return list(self)

    def last(self) -> Optional[ContextEntry]:
        """Latest entry of the snapshot, if any."""
        last = None
        for entry in self:
            last = entry
        return last

    def current_phase(self) -> Phase:
        """
        Phase set by the latest coordinator transition.

        Content written by agents never changes the phase; a log without
        any transition is still planning.
        """
        phase = Phase.PLANNING
        for entry in self:
            if entry.is_transition:
                phase = entry.phase
        return phase

    def of_kind(self, kind: EntryKind) -> list[ContextEntry]:
        """Entries of one kind, in order."""
        return [entry for entry in self if entry.kind == kind]


class SessionContextManager:
    """
    Mediates all reads and writes of session state.

    Remembers, per session, the log length this instance last read. An
    append without an explicit ``expected_length`` is checked against that
    observation, so a writer that has not seen newer entries gets a
    ConcurrentAppendConflict instead of silently interleaving.
    """

    def __init__(
        self,
        store: ArtifactStore,
        logger: Optional[RelayLogger] = None,
        lock_timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the manager.

        Args:
            store: ArtifactStore holding session records and logs.
            logger: Optional logger for recording operations.
            lock_timeout: Seconds to wait for the log lock on append.
        """
        self.store = store
        self.logger = logger
        self._lock_timeout = lock_timeout
        self._observed: dict[str, int] = {}
        self._observed_lock = threading.Lock()

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"component": "context"}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    def _remember(self, session_id: str, length: int) -> None:
        with self._observed_lock:
            self._observed[session_id] = length

    def _observed_length(self, session_id: str) -> Optional[int]:
        with self._observed_lock:
            return self._observed.get(session_id)

    # =========================================================================
    # Sessions
    # =========================================================================

    def create(self, record: SessionRecord) -> SessionRecord:
        """
        Persist a new session record.

        Raises:
            SessionExistsError: If the id is already used.
        """
        if self.exists(record.session_id):
            raise SessionExistsError(f"session already exists: {record.session_id}")
        self.store.put(session_key(record.session_id), record.to_dict())
        self._log("session_created", {
            "session_id": record.session_id,
            "feature": record.feature,
            "plan_types": record.plan_types,
        })
        return record

    def load(self, session_id: str) -> SessionRecord:
        """
        Load a session record.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        try:
            return SessionRecord.from_dict(self.store.get(session_key(session_id)))
        except ArtifactNotFoundError:
            raise SessionNotFoundError(session_id)

    def exists(self, session_id: str) -> bool:
        return self.store.exists(session_key(session_id))

    def list_sessions(self) -> list[str]:
        """All session ids, sorted."""
        suffix = "/session"
        return [
            key[len(SESSIONS_PREFIX) + 1: -len(suffix)]
            for key in self.store.list(f"{SESSIONS_PREFIX}/")
            if key.endswith(suffix) and key.count("/") == 2
        ]

    # =========================================================================
    # Context log
    # =========================================================================

    def _snapshot(self, session_id: str) -> ContextLog:
        if not self.exists(session_id):
            raise SessionNotFoundError(session_id)
        length = self.store.log_length(context_key(session_id))
        return ContextLog(self.store, session_id, length)

    def read(self, session_id: str) -> ContextLog:
        """
        Take a snapshot of the context log and remember its length.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        log = self._snapshot(session_id)
        self._remember(session_id, len(log))
        return log

    def append(
        self,
        session_id: str,
        entry: ContextEntry,
        expected_length: Optional[int] = None,
    ) -> ContextEntry:
        """
        Append an entry on top of the snapshot the caller last read.

        Args:
            session_id: The session identifier.
            entry: Entry to append; its ``seq`` is assigned here.
            expected_length: Log length the caller based this entry on.
                             Defaults to the length this manager last read,
                             or the current length if it never read.

        Returns:
            The appended entry with its position set.

        Raises:
            SessionNotFoundError: If the session does not exist.
            ConcurrentAppendConflict: If the log grew since the caller's read.
            StalePhaseError: If the entry's phase precedes the session phase,
                             or it is a transition out of a terminal phase.
        """
        if expected_length is None:
            expected_length = self._observed_length(session_id)
        if not self.exists(session_id):
            raise SessionNotFoundError(session_id)
        if expected_length is None:
            expected_length = self.store.log_length(context_key(session_id))

        basis = ContextLog(self.store, session_id, expected_length)
        current = basis.current_phase()
        if entry.phase.rank < current.rank or (current.is_terminal and entry.is_transition):
            self._log("stale_append_rejected", {
                "session_id": session_id,
                "role": entry.role,
                "entry_phase": entry.phase.value,
                "current_phase": current.value,
            }, level="warn")
            raise StalePhaseError(
                f"role '{entry.role}' appended for phase {entry.phase.value} "
                f"but session {session_id} is {current.value}"
            )

        placed = entry.with_seq(expected_length)
        new_length = self.store.append(
            context_key(session_id),
            placed.to_dict(),
            expected_length,
            timeout=self._lock_timeout,
        )
        self._remember(session_id, new_length)
        self._log("context_appended", {
            "session_id": session_id,
            "role": entry.role,
            "kind": entry.kind.value,
            "seq": placed.seq,
        }, level="debug")
        return placed

    def append_with_retry(
        self,
        session_id: str,
        entry: ContextEntry,
        max_attempts: int = 3,
    ) -> ContextEntry:
        """
        Append, re-reading the log and retrying on conflict.

        Raises:
            ConcurrentAppendConflict: If every attempt conflicted.
            StalePhaseError: If a re-read shows the entry's phase is superseded.
        """
        last_conflict: Optional[ConcurrentAppendConflict] = None
        for attempt in range(max_attempts):
            length = len(self.read(session_id))
            try:
                return self.append(session_id, entry, expected_length=length)
            except ConcurrentAppendConflict as e:
                last_conflict = e
                self._log("append_retry", {
                    "session_id": session_id,
                    "role": entry.role,
                    "attempt": attempt + 1,
                }, level="warn")

        raise last_conflict  # type: ignore[misc]

    def current_phase(self, session_id: str) -> Phase:
        """
        Phase of the latest coordinator transition entry.

        Does not change the snapshot this manager appends against.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        return self._snapshot(session_id).current_phase()

    def last_entry(self, session_id: str) -> Optional[ContextEntry]:
        """Latest entry of the log, if any."""
        return self._snapshot(session_id).last()

    def failures(self, session_id: str) -> list[ContextEntry]:
        """All structured failure entries, in order."""
        return self._snapshot(session_id).of_kind(EntryKind.FAILURE)
