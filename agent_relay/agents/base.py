"""
Runner contract for Agent Relay roles.

This module provides the boundary between the coordinator and the workers:
- RoleInvocation bundles everything a role may read for one run
- AgentResult is the standardized return value (artifacts + context delta)
- AgentRunner abstract class every worker implements
- CancellationToken passed to each invocation

A runner is a function from (contract, session context, artifacts) to
(new artifacts, context delta). It never writes to the context log or the
registries itself; the coordinator validates the result against the role
contract and persists it.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from agent_relay.models import PlanDraft, ReviewReport

if TYPE_CHECKING:
    from agent_relay.agents.tools import RoleTools
    from agent_relay.context import ContextLog
    from agent_relay.plans import PlanRegistry
    from agent_relay.reports import ReportRegistry
    from agent_relay.roles import RoleContract, RuleDocument


class CancellationToken:
    """Cooperative cancellation flag shared with in-flight invocations."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; True if cancelled."""
        return self._event.wait(timeout)


@dataclass
class RoleInvocation:
    """Inputs of one role run."""

    session_id: str
    contract: RoleContract
    task: str
    feature: str
    plan_types: list[str]
    context: ContextLog                  # Snapshot the role bases its delta on
    plans: PlanRegistry                  # Read-only use
    reports: ReportRegistry              # Read-only use
    tools: RoleTools
    rules: tuple[RuleDocument, ...] = ()
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    timeout: Optional[float] = None
    attempt: int = 1

    @property
    def role(self) -> str:
        return self.contract.name


@dataclass
class AgentResult:
    """
    Result from a role run.

    Provides a standardized return type for all runners with success/failure
    indication, produced artifacts, the context delta and cost tracking.
    """

    success: bool
    plans: list[PlanDraft] = field(default_factory=list)
    report: Optional[ReviewReport] = None
    notes: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "plans": [{"plan_type": p.plan_type, "feature": p.feature} for p in self.plans],
            "report": self.report.report_id if self.report else None,
            "notes": self.notes,
            "errors": self.errors,
            "cost_usd": self.cost_usd,
        }

    @classmethod
    def success_result(
        cls,
        plans: Optional[list[PlanDraft]] = None,
        report: Optional[ReviewReport] = None,
        notes: Optional[list[str]] = None,
        cost_usd: float = 0.0,
    ) -> AgentResult:
        """Create a successful result."""
        return cls(
            success=True,
            plans=plans or [],
            report=report,
            notes=notes or [],
            cost_usd=cost_usd,
        )

    @classmethod
    def failure_result(cls, error: str, cost_usd: float = 0.0) -> AgentResult:
        """Create a failed result with a single error."""
        return cls(success=False, errors=[error], cost_usd=cost_usd)


class AgentRunner(ABC):
    """
    Abstract base class for role workers.

    Subclasses must implement run(). Raising is allowed: the coordinator
    records any exception as a role invocation failure.
    """

    # Runner name used in logs (override in subclasses)
    name: str = "runner"

    @abstractmethod
    def run(self, invocation: RoleInvocation) -> AgentResult:
        """
        Execute one role invocation.

        Args:
            invocation: Contract, context snapshot and artifact access.

        Returns:
            AgentResult with produced artifacts and context notes.
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
