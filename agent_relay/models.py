"""
Core data models for Agent Relay.

This module defines the foundational data structures used throughout the system:
- Enums for session phases, capabilities and finding severities
- Dataclasses for session records, context entries, plans and review reports
- JSON serialization support for all models
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def now_iso() -> str:
    """Current UTC time in ISO format with a trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Phase(Enum):
    """
    Phases of a coordinated session.

    Declared in lifecycle order; ``rank`` is used to reject stale writers.
    """
    PLANNING = "planning"
    READY_FOR_EXECUTION = "ready_for_execution"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    REFACTORING = "refactoring"
    DONE = "done"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.DONE, Phase.FAILED)


_PHASE_ORDER = list(Phase)


class Capability(Enum):
    """Capabilities a role contract may grant."""
    READ = "read"
    SEARCH_TEXT = "search-text"
    SEARCH_GLOB = "search-glob"
    WRITE_NEW_FILE = "write-new-file"
    EDIT_EXISTING_FILE = "edit-existing-file"
    EXECUTE_SHELL = "execute-shell"


class Severity(Enum):
    """Severity of a review finding."""
    MAJOR = "major"
    MEDIUM = "medium"
    MINOR = "minor"


class EntryKind(Enum):
    """Kinds of context log entries."""
    NOTE = "note"                    # Free-form agent output (plan summary, notes)
    TRANSITION = "transition"        # Coordinator phase change
    FAILURE = "failure"              # Structured role or dispatch failure
    COMPLETION = "completion"        # Role finished its work for the phase
    CANCEL = "cancel"                # Poison entry written on cancellation


COORDINATOR_ROLE = "coordinator"

# Artifact types used in role contracts
PLAN_ARTIFACT = "plan"
REPORT_ARTIFACT = "report"


def plan_artifact(plan_type: str) -> str:
    """Artifact type naming a plan of a given type."""
    return f"{PLAN_ARTIFACT}:{plan_type}"


@dataclass
class SessionRecord:
    """
    Static description of a session.

    Persisted once at sessions/<id>/session.json. The phase is not stored
    here; it is derived from the context log.
    """
    session_id: str                  # Opaque unique identifier
    task: str                        # Human task description
    feature: str                     # Feature name plans are keyed by
    plan_types: list[str] = field(default_factory=list)  # Requested plan types
    refactor_requested: bool = False
    review_requested: bool = True
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = now_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        """Create from dictionary."""
        return cls(**data)


@dataclass(frozen=True)
class ContextEntry:
    """
    One immutable entry of a session's context log.

    ``seq`` is assigned by the store position; entries built by callers
    carry -1 until appended.
    """
    role: str
    phase: Phase
    content: str
    kind: EntryKind = EntryKind.NOTE
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)
    seq: int = -1

    @property
    def is_transition(self) -> bool:
        return self.kind == EntryKind.TRANSITION and self.role == COORDINATOR_ROLE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "seq": self.seq,
            "role": self.role,
            "phase": self.phase.value,
            "kind": self.kind.value,
            "content": self.content,
            "data": dict(self.data),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextEntry:
        """Create from dictionary."""
        return cls(
            role=data["role"],
            phase=Phase(data["phase"]),
            content=data.get("content", ""),
            kind=EntryKind(data.get("kind", EntryKind.NOTE.value)),
            data=data.get("data") or {},
            timestamp=data.get("timestamp", ""),
            seq=data.get("seq", -1),
        )

    def with_seq(self, seq: int) -> ContextEntry:
        """Copy of this entry placed at position ``seq``."""
        return ContextEntry(
            role=self.role,
            phase=self.phase,
            content=self.content,
            kind=self.kind,
            data=dict(self.data),
            timestamp=self.timestamp,
            seq=seq,
        )


@dataclass
class PlanArtifact:
    """
    A plan produced by a planner role.

    Keyed by (plan_type, feature); the body is role-specific and opaque to
    the coordinator.
    """
    plan_type: str
    feature: str
    body: str
    role: str
    created_at: str = field(default_factory=now_iso)

    @property
    def key(self) -> tuple[str, str]:
        return (self.plan_type, self.feature)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanArtifact:
        """Create from dictionary."""
        return cls(**data)


@dataclass
class PlanDraft:
    """A plan returned by a runner, before the registry stores it."""
    plan_type: str
    body: str
    feature: Optional[str] = None    # Defaults to the session feature

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanDraft:
        """Create from dictionary."""
        return cls(
            plan_type=data.get("type") or data.get("plan_type") or "",
            body=data.get("body", ""),
            feature=data.get("feature"),
        )


@dataclass
class Finding:
    """A single review finding."""
    severity: Severity
    description: str
    rule: str = ""                   # Convention the finding refers to
    path: str = ""                   # Affected file path

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["severity"] = self.severity.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        """Create from dictionary."""
        return cls(
            severity=Severity(str(data.get("severity", "minor")).lower()),
            description=str(data.get("description", "")),
            rule=str(data.get("rule") or ""),
            path=str(data.get("path") or ""),
        )


@dataclass
class ReviewReport:
    """
    Review report produced by the reviewer role.

    Persisted to sessions/<id>/reports/<report_id>.json
    """
    findings: list[Finding] = field(default_factory=list)
    role: str = "reviewer"
    summary: str = ""
    created_at: str = field(default_factory=now_iso)
    report_id: str = ""

    def __post_init__(self) -> None:
        if not self.report_id:
            stamp = self.created_at.replace(":", "").replace("-", "").replace(".", "")
            self.report_id = stamp.rstrip("Z")

    def count(self, severity: Severity) -> int:
        """Number of findings with the given severity."""
        return sum(1 for f in self.findings if f.severity == severity)

    @property
    def severity_counts(self) -> dict[str, int]:
        return {s.value: self.count(s) for s in Severity}

    @property
    def has_major(self) -> bool:
        return self.count(Severity.MAJOR) > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "report_id": self.report_id,
            "role": self.role,
            "summary": self.summary,
            "created_at": self.created_at,
            "severity_counts": self.severity_counts,
            "findings": [f.to_dict() for f in self.findings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewReport:
        """Create from dictionary."""
        return cls(
            findings=[Finding.from_dict(f) for f in data.get("findings", [])],
            role=data.get("role", "reviewer"),
            summary=data.get("summary", ""),
            created_at=data.get("created_at", "") or now_iso(),
            report_id=data.get("report_id", ""),
        )


@dataclass
class ModelResult:
    """Parsed output of one external model CLI call."""
    text: str
    total_cost_usd: float = 0.0
    num_turns: int = 0
    duration_ms: int = 0
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionStatus:
    """Snapshot returned by the status command."""
    session_id: str
    phase: Phase
    pending_roles: list[str] = field(default_factory=list)
    last_entry: Optional[ContextEntry] = None
    last_error: Optional[dict[str, Any]] = None
    report: Optional[ReviewReport] = None
    artifacts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "phase": self.phase.value,
            "pending_roles": list(self.pending_roles),
            "last_entry": self.last_entry.to_dict() if self.last_entry else None,
            "last_error": self.last_error,
            "report": self.report.to_dict() if self.report else None,
            "artifacts": list(self.artifacts),
        }


# JSON encoder for custom types
class RelayEncoder(json.JSONEncoder):
    """JSON encoder that handles Agent Relay model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to JSON string."""
    return json.dumps(obj, cls=RelayEncoder, **kwargs)
