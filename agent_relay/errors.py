"""
Error taxonomy for Agent Relay.

This module provides:
- ErrorKind enum used when failures are recorded as structured data
- RelayError base exception carrying its kind
- Typed exceptions for store, session, plan, role and dispatch failures

Errors raised by roles are never thrown across the coordinator boundary as
opaque exceptions: the coordinator converts them into context entries of the
form ``{role, error_kind, message}``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Classification of relay failures."""

    NOT_FOUND = "not_found"
    CONCURRENT_APPEND_CONFLICT = "concurrent_append_conflict"
    STALE_PHASE = "stale_phase"
    UNKNOWN_ROLE = "unknown_role"
    UNAUTHORIZED = "unauthorized"
    NO_ELIGIBLE_ROLE = "no_eligible_role"
    ROLE_INVOCATION = "role_invocation"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    STORE = "store"
    CONFIG = "config"
    INVALID = "invalid"


class RelayError(Exception):
    """Base exception for all relay errors."""

    kind: ErrorKind = ErrorKind.INVALID

    def to_dict(self) -> dict[str, str]:
        """Structured form used in context entries."""
        return {"error_kind": self.kind.value, "message": str(self)}


# =============================================================================
# Not found
# =============================================================================


class NotFoundError(RelayError):
    """An artifact, plan or session is absent."""

    kind = ErrorKind.NOT_FOUND


class ArtifactNotFoundError(NotFoundError):
    """Raised when a store key has no document."""

    def __init__(self, key: str) -> None:
        super().__init__(f"artifact not found: {key}")
        self.key = key


class SessionNotFoundError(NotFoundError):
    """Raised when a session id is unknown."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class PlanNotFoundError(NotFoundError):
    """Raised when a (plan type, feature) key has no live plan."""

    def __init__(self, plan_type: str, feature: str) -> None:
        super().__init__(f"missing plan: {plan_type}/{feature}")
        self.plan_type = plan_type
        self.feature = feature


# =============================================================================
# Store
# =============================================================================


class StoreError(RelayError):
    """Raised when a store operation fails."""

    kind = ErrorKind.STORE


class InvalidKeyError(StoreError):
    """Raised when an artifact key is malformed."""

    kind = ErrorKind.INVALID


class StoreTimeoutError(StoreError):
    """Raised when a store lock cannot be acquired in time."""

    kind = ErrorKind.TIMEOUT


class ConcurrentAppendConflict(RelayError):
    """
    Raised when a log was appended to since the caller last read it.

    Recoverable: the caller re-reads the log and retries.
    """

    kind = ErrorKind.CONCURRENT_APPEND_CONFLICT

    def __init__(self, log_key: str, expected: int, actual: int) -> None:
        super().__init__(
            f"log {log_key} has {actual} entries, caller expected {expected}"
        )
        self.log_key = log_key
        self.expected = expected
        self.actual = actual


class InvalidRequestError(RelayError):
    """Raised when a session request is malformed."""

    kind = ErrorKind.INVALID


class SessionExistsError(RelayError):
    """Raised when creating a session whose id is taken."""

    kind = ErrorKind.INVALID


class StalePhaseError(RelayError):
    """Raised when an append declares a phase older than the session's."""

    kind = ErrorKind.STALE_PHASE


# =============================================================================
# Roles and dispatch
# =============================================================================


class UnknownRoleError(RelayError):
    """Raised when a role name has no contract."""

    kind = ErrorKind.UNKNOWN_ROLE

    def __init__(self, role: str) -> None:
        super().__init__(f"unknown role: {role}")
        self.role = role


class UnauthorizedError(RelayError):
    """Raised when a role uses a capability or output outside its contract."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, role: str, capability: str, detail: str = "") -> None:
        message = f"role '{role}' is not authorized for '{capability}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.role = role
        self.capability = capability


class ToolError(RelayError):
    """Raised when a permitted tool call cannot be carried out."""

    kind = ErrorKind.INVALID


class NoEligibleRoleError(RelayError):
    """Raised when dispatch finds nothing to run for the current phase."""

    kind = ErrorKind.NO_ELIGIBLE_ROLE


class RoleInvocationError(RelayError):
    """
    Raised when an external agent runner fails.

    Wraps the underlying cause; ``cause_kind`` keeps the kind of the
    original error (for example ``not_found`` for a missing plan).
    """

    kind = ErrorKind.ROLE_INVOCATION

    def __init__(
        self,
        role: str,
        message: str,
        cause_kind: Optional[ErrorKind] = None,
    ) -> None:
        super().__init__(message)
        self.role = role
        self.cause_kind = cause_kind

    def to_dict(self) -> dict[str, str]:
        data = super().to_dict()
        data["role"] = self.role
        if self.cause_kind is not None:
            data["cause_kind"] = self.cause_kind.value
        return data


class InvocationCancelledError(RoleInvocationError):
    """Raised inside a runner when its cancellation token is set."""

    kind = ErrorKind.CANCELLED


class ConfigError(RelayError):
    """Raised when configuration is invalid or cannot be loaded."""

    kind = ErrorKind.CONFIG
