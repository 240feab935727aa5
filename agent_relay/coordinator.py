"""
Coordinator session state machine for Agent Relay.

This module handles:
- Session creation from a task request
- Computing the roles eligible for the current phase
- Dispatching eligible roles concurrently and persisting their output
- Gating phase transitions on artifact existence
- Retry-once failure handling and forced failure on cancellation

Phases and the roles dispatched in each:

┌─────────────────────┐
│      PLANNING       │  ui-planner, logic-planner, architecture-planner
└─────────────────────┘
          │
          ▼ (all requested plan types registered)
┌─────────────────────┐
│ READY_FOR_EXECUTION │  none, moves on immediately
└─────────────────────┘
          │
          ▼
┌─────────────────────┐
│      EXECUTING      │  executor
└─────────────────────┘
          │
          ▼ (executor completed; straight to DONE if no review requested)
┌─────────────────────┐
│      REVIEWING      │  reviewer
└─────────────────────┘
          │
          ▼ (zero MAJOR findings and refactor requested; otherwise DONE)
┌─────────────────────┐
│     REFACTORING     │  refactorer
└─────────────────────┘
          │
          ▼
┌─────────────────────┐
│        DONE         │  terminal (FAILED is reachable from every phase)
└─────────────────────┘

The phase is never held in memory: every decision re-reads it from the
session's context log.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import nullcontext
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, ContextManager, Mapping, Optional

from agent_relay.agents.base import AgentResult, AgentRunner, CancellationToken, RoleInvocation
from agent_relay.agents.model_agent import ModelRoleAgent
from agent_relay.agents.tools import RoleTools
from agent_relay.artifact_store import ArtifactStore
from agent_relay.context import SessionContextManager
from agent_relay.errors import (
    ConcurrentAppendConflict,
    ErrorKind,
    InvalidKeyError,
    InvalidRequestError,
    InvocationCancelledError,
    NoEligibleRoleError,
    RelayError,
    RoleInvocationError,
    StalePhaseError,
    UnauthorizedError,
)
from agent_relay.models import (
    COORDINATOR_ROLE,
    PLAN_ARTIFACT,
    REPORT_ARTIFACT,
    ContextEntry,
    EntryKind,
    Phase,
    SessionRecord,
    SessionStatus,
    plan_artifact,
)
from agent_relay.plans import PlanRegistry
from agent_relay.reports import ReportRegistry
from agent_relay.roles import get_registry

if TYPE_CHECKING:
    from agent_relay.config import RelayConfig
    from agent_relay.logger import RelayLogger
    from agent_relay.roles import RoleContract, RoleRegistry


@dataclass
class RoleOutcome:
    """Result of dispatching one role (after retries)."""
    role: str
    result: Optional[AgentResult] = None
    error: Optional[RelayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Coordinator:
    """
    Drives sessions through their phases.

    Runners are looked up by role name; roles without a dedicated runner
    use ``default_runner``.
    """

    def __init__(
        self,
        config: RelayConfig,
        store: ArtifactStore,
        registry: RoleRegistry,
        runners: Optional[Mapping[str, AgentRunner]] = None,
        default_runner: Optional[AgentRunner] = None,
        logger: Optional[RelayLogger] = None,
    ) -> None:
        """
        Initialize the Coordinator.

        Args:
            config: RelayConfig with retry, timeout and dispatch settings.
            store: ArtifactStore shared by every role.
            registry: Role contracts.
            runners: Runner per role name.
            default_runner: Runner for roles missing from ``runners``.
            logger: Optional logger for recording operations.
        """
        self.config = config
        self.store = store
        self.registry = registry
        self.runners = dict(runners or {})
        self.default_runner = default_runner
        self.logger = logger
        self.context = SessionContextManager(
            store, logger=logger, lock_timeout=config.timeouts.store_lock_seconds
        )
        self._active: dict[str, list[CancellationToken]] = {}
        self._active_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: RelayConfig,
        runners: Optional[Mapping[str, AgentRunner]] = None,
        logger: Optional[RelayLogger] = None,
    ) -> Coordinator:
        """Build a Coordinator with the model runner as default and its own logging store."""
        store = ArtifactStore(
            config.store_path,
            logger=logger,
            lock_timeout=config.timeouts.store_lock_seconds,
        )
        return cls(
            config,
            store,
            get_registry(config),
            runners=runners,
            default_runner=ModelRoleAgent(config, logger),
            logger=logger,
        )

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"component": "coordinator"}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    def plans(self, session_id: str) -> PlanRegistry:
        return PlanRegistry(self.store, session_id, self.logger)

    def reports(self, session_id: str) -> ReportRegistry:
        return ReportRegistry(self.store, session_id)

    # =========================================================================
    # Sessions
    # =========================================================================

    def _generate_session_id(self) -> str:
        """Generate a unique session ID."""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        return f"sess_{timestamp}_{uuid.uuid4().hex[:4]}"

    def start_session(
        self,
        task: str,
        feature: str,
        plan_types: list[str],
        refactor: bool = False,
        review: bool = True,
    ) -> str:
        """
        Create a session and enter PLANNING.

        Args:
            task: Human description of the task.
            feature: Feature name plans are keyed by.
            plan_types: Plan types required before execution.
            refactor: Run the refactor phase after a review without MAJOR findings.
            review: Run the review phase after execution.

        Returns:
            The new session id.

        Raises:
            InvalidRequestError: If the task, feature or plan types are malformed.
        """
        if not task or not task.strip():
            raise InvalidRequestError("task description must not be empty")
        types = list(dict.fromkeys(plan_types))
        if not types:
            raise InvalidRequestError("at least one plan type is required")
        try:
            ArtifactStore.validate_key(feature)
            for plan_type in types:
                ArtifactStore.validate_key(plan_type)
        except InvalidKeyError as e:
            raise InvalidRequestError(f"invalid feature or plan type: {e}")
        if "/" in feature or any("/" in t for t in types):
            raise InvalidRequestError("feature and plan type names must not contain '/'")

        record = SessionRecord(
            session_id=self._generate_session_id(),
            task=task.strip(),
            feature=feature,
            plan_types=types,
            refactor_requested=refactor,
            review_requested=review,
        )
        self.context.create(record)
        self._transition(record.session_id, None, Phase.PLANNING, f"session started: {record.task}")
        self._log("session_started", {
            "session_id": record.session_id,
            "feature": feature,
            "plan_types": types,
            "refactor": refactor,
            "review": review,
        })
        return record.session_id

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(
        self,
        session_id: str,
        from_phase: Optional[Phase],
        to_phase: Phase,
        reason: str,
        data: Optional[dict] = None,
    ) -> Phase:
        """
        Append a coordinator transition entry.

        Returns the phase the session is in afterwards. If another writer
        already moved the session to a later phase (a cancellation from
        another process), that phase is returned instead.
        """
        entry_data = {
            "from": from_phase.value if from_phase else None,
            "to": to_phase.value,
            "reason": reason,
        }
        if data:
            entry_data.update(data)
        source = from_phase.value if from_phase else "start"
        entry = ContextEntry(
            role=COORDINATOR_ROLE,
            phase=to_phase,
            content=f"{source} -> {to_phase.value}: {reason}",
            kind=EntryKind.TRANSITION,
            data=entry_data,
        )
        try:
            self.context.append_with_retry(
                session_id, entry, max_attempts=self.config.retry.max_append_attempts
            )
        except StalePhaseError:
            current = self.context.current_phase(session_id)
            self._log("transition_superseded", {
                "session_id": session_id,
                "to": to_phase.value,
                "current": current.value,
            }, level="warn")
            return current

        self._log("phase_transition", {
            "session_id": session_id,
            "from": entry_data["from"],
            "to": to_phase.value,
            "reason": reason,
        })
        return to_phase

    def _fail(
        self,
        session_id: str,
        from_phase: Phase,
        reason: str,
        error_kind: ErrorKind,
    ) -> Phase:
        self._log("session_failed", {
            "session_id": session_id,
            "phase": from_phase.value,
            "reason": reason,
            "error_kind": error_kind.value,
        }, level="error")
        return self._transition(
            session_id, from_phase, Phase.FAILED, reason, {"error_kind": error_kind.value}
        )

    def _fail_stuck(self, session_id: str, phase: Phase, reason: str) -> Phase:
        """Fail a session that cannot make progress in its phase."""
        error = NoEligibleRoleError(reason)
        self._record_failure(session_id, phase, COORDINATOR_ROLE, error)
        return self._fail(session_id, phase, reason, error.kind)

    def _record_failure(self, session_id: str, phase: Phase, role: str, error: RelayError) -> None:
        """Append a structured failure entry for a role."""
        data = error.to_dict()
        data["role"] = role
        entry = ContextEntry(
            role=COORDINATOR_ROLE,
            phase=phase,
            content=f"{role} failed: {error}",
            kind=EntryKind.FAILURE,
            data=data,
        )
        try:
            self.context.append_with_retry(
                session_id, entry, max_attempts=self.config.retry.max_append_attempts
            )
        except StalePhaseError:
            self._log("failure_entry_superseded", {"session_id": session_id, "role": role},
                      level="warn")

    # =========================================================================
    # Eligibility
    # =========================================================================

    def _artifact_set(self, session_id: str, record: SessionRecord) -> frozenset[str]:
        """Artifact types currently present for the session's feature."""
        present: set[str] = set()
        types = self.plans(session_id).plan_types(record.feature)
        if types:
            present.add(PLAN_ARTIFACT)
            present.update(plan_artifact(t) for t in types)
        if self.reports(session_id).exists():
            present.add(REPORT_ARTIFACT)
        return frozenset(present)

    def _plans_complete(self, record: SessionRecord, artifacts: frozenset[str]) -> bool:
        return all(plan_artifact(t) in artifacts for t in record.plan_types)

    def _missing_plans(self, record: SessionRecord, artifacts: frozenset[str]) -> list[str]:
        return [t for t in record.plan_types if plan_artifact(t) not in artifacts]

    def _eligible(
        self,
        phase: Phase,
        record: SessionRecord,
        artifacts: frozenset[str],
    ) -> tuple[list[str], dict[str, list[str]]]:
        """
        Roles to dispatch for a (phase, artifact set) snapshot.

        Returns:
            (eligible roles sorted by name, missing inputs per excluded role)
        """
        eligible = []
        missing: dict[str, list[str]] = {}
        requested = set(record.plan_types)

        for role in self.registry.eligible_roles(phase):
            contract = self.registry.resolve(role)
            lacking = sorted(contract.required_inputs - artifacts)
            if lacking:
                missing[role] = lacking
                continue
            if phase == Phase.PLANNING and contract.plan_types:
                wanted = contract.plan_types & requested
                if not wanted or all(plan_artifact(t) in artifacts for t in wanted):
                    continue
            eligible.append(role)

        return eligible, missing

    def eligible_roles(self, session_id: str) -> list[str]:
        """
        Roles the next dispatch would invoke.

        Deterministic for a given phase and artifact set.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        record = self.context.load(session_id)
        phase = self.context.current_phase(session_id)
        if phase.is_terminal or phase == Phase.READY_FOR_EXECUTION:
            return []
        eligible, _ = self._eligible(phase, record, self._artifact_set(session_id, record))
        return eligible

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _runner_for(self, role: str) -> AgentRunner:
        runner = self.runners.get(role, self.default_runner)
        if runner is None:
            raise RoleInvocationError(role, f"no runner configured for role {role}")
        return runner

    def _register_token(self, session_id: str, token: CancellationToken) -> None:
        with self._active_lock:
            self._active.setdefault(session_id, []).append(token)

    def _release_token(self, session_id: str, token: CancellationToken) -> None:
        with self._active_lock:
            tokens = self._active.get(session_id, [])
            if token in tokens:
                tokens.remove(token)

    def _cancel_tokens(self, session_id: str, reason: str) -> None:
        with self._active_lock:
            tokens = list(self._active.get(session_id, []))
        for token in tokens:
            token.cancel(reason)

    def _call_with_timeout(self, runner: AgentRunner, invocation: RoleInvocation) -> AgentResult:
        """
        Run ``runner`` on its own thread and wait at most the role timeout.

        On expiry the invocation token is cancelled and the runner is left
        to observe it.
        """
        outcome: dict = {}

        def target() -> None:
            try:
                with self._role_scope(invocation.role):
                    outcome["result"] = runner.run(invocation)
            except Exception as e:
                outcome["error"] = e

        thread = threading.Thread(
            target=target, name=f"relay-{invocation.role}-{invocation.attempt}", daemon=True
        )
        thread.start()
        thread.join(invocation.timeout)

        if thread.is_alive():
            invocation.cancel_token.cancel("timeout")
            raise RoleInvocationError(
                invocation.role,
                f"role {invocation.role} timed out after {invocation.timeout}s",
                cause_kind=ErrorKind.TIMEOUT,
            )
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

    def _validate(self, contract: RoleContract, result: AgentResult) -> None:
        """
        Check produced artifacts against the contract.

        Raises:
            UnauthorizedError: If a plan type or report is outside ``produces``.
        """
        for draft in result.plans:
            artifact = plan_artifact(draft.plan_type)
            if artifact not in contract.produces:
                raise UnauthorizedError(contract.name, artifact, "plan type outside contract")
        if result.report is not None and not contract.produces_report:
            raise UnauthorizedError(contract.name, REPORT_ARTIFACT, "role may not produce reports")

    def _persist(
        self,
        session_id: str,
        record: SessionRecord,
        phase: Phase,
        contract: RoleContract,
        result: AgentResult,
        snapshot_length: int,
        touched: list[str],
    ) -> None:
        """Store the role's artifacts and append its context delta."""
        plans = self.plans(session_id)
        registered = []
        for draft in result.plans:
            feature = draft.feature or record.feature
            previous = plans.register(draft.plan_type, feature, draft.body, contract.name)
            registered.append({
                "plan_type": draft.plan_type,
                "feature": feature,
                "replaced": previous is not None,
            })

        report_id = None
        if result.report is not None:
            result.report.role = contract.name
            self.reports(session_id).save(result.report)
            report_id = result.report.report_id

        entry = ContextEntry(
            role=contract.name,
            phase=phase,
            content="\n".join(result.notes) or f"{contract.name} completed",
            kind=EntryKind.COMPLETION,
            data={
                "plans": registered,
                "report": report_id,
                "touched": touched,
                "cost_usd": result.cost_usd,
            },
        )
        # First try on top of the snapshot the role saw, then re-read
        try:
            self.context.append(session_id, entry, expected_length=snapshot_length)
        except ConcurrentAppendConflict:
            self._log("context_delta_conflict", {
                "session_id": session_id,
                "role": contract.name,
            }, level="debug")
            self.context.append_with_retry(
                session_id, entry, max_attempts=self.config.retry.max_append_attempts
            )

    def _as_invocation_error(self, role: str, error: Exception) -> RoleInvocationError:
        if isinstance(error, RoleInvocationError):
            return error
        if isinstance(error, RelayError):
            return RoleInvocationError(role, str(error), cause_kind=error.kind)
        return RoleInvocationError(role, f"{type(error).__name__}: {error}")

    def _role_scope(self, role: str) -> ContextManager[object]:
        """Tag the current thread's log events with ``role``."""
        if self.logger:
            return self.logger.role_context(role)
        return nullcontext()

    def _invoke_with_retry(
        self,
        session_id: str,
        record: SessionRecord,
        phase: Phase,
        role: str,
    ) -> RoleOutcome:
        """
        Invoke one role, retrying a failed invocation.

        Contract violations and persistence conflicts are not retried.
        """
        with self._role_scope(role):
            return self._attempt_role(session_id, record, phase, role)

    def _attempt_role(
        self,
        session_id: str,
        record: SessionRecord,
        phase: Phase,
        role: str,
    ) -> RoleOutcome:
        contract = self.registry.resolve(role)
        max_attempts = self.config.retry.max_invocation_attempts
        last_error: Optional[RoleInvocationError] = None

        for attempt in range(1, max_attempts + 1):
            token = CancellationToken()
            self._register_token(session_id, token)
            tools = RoleTools(
                self.registry, role, self.config.repo_root, logger=self.logger,
                command_timeout=self.config.timeouts.role_seconds,
            )
            snapshot = self.context.read(session_id)
            invocation = RoleInvocation(
                session_id=session_id,
                contract=contract,
                task=record.task,
                feature=record.feature,
                plan_types=list(record.plan_types),
                context=snapshot,
                plans=self.plans(session_id),
                reports=self.reports(session_id),
                tools=tools,
                rules=self.registry.rules,
                cancel_token=token,
                timeout=self.config.timeouts.role_seconds,
                attempt=attempt,
            )
            self._log("role_dispatched", {
                "session_id": session_id,
                "role": role,
                "phase": phase.value,
                "attempt": attempt,
            })

            try:
                result = self._call_with_timeout(self._runner_for(role), invocation)
                if not result.success:
                    raise RoleInvocationError(
                        role, "; ".join(result.errors) or f"{role} reported failure"
                    )
                self._validate(contract, result)
                self._persist(
                    session_id, record, phase, contract, result, len(snapshot), tools.touched
                )
                self._log("role_completed", {
                    "session_id": session_id,
                    "role": role,
                    "attempt": attempt,
                    "plans": [p.plan_type for p in result.plans],
                    "cost_usd": result.cost_usd,
                })
                return RoleOutcome(role, result=result)

            except (UnauthorizedError, ConcurrentAppendConflict, StalePhaseError) as e:
                self._log("role_rejected", {
                    "session_id": session_id,
                    "role": role,
                    "error": str(e),
                    "error_kind": e.kind.value,
                }, level="error")
                return RoleOutcome(role, error=e)

            except Exception as e:
                last_error = self._as_invocation_error(role, e)
                if token.cancelled and token.reason != "timeout":
                    return RoleOutcome(
                        role, error=InvocationCancelledError(role, f"cancelled: {token.reason}")
                    )
                self._log("role_invocation_failed", {
                    "session_id": session_id,
                    "role": role,
                    "attempt": attempt,
                    "error": str(last_error),
                    "cause_kind": last_error.cause_kind.value if last_error.cause_kind else None,
                }, level="warn" if attempt < max_attempts else "error")

            finally:
                self._release_token(session_id, token)

        return RoleOutcome(role, error=last_error)

    def _externally_terminated(self, session_id: str) -> bool:
        return self.context.current_phase(session_id).is_terminal

    def _dispatch(
        self,
        session_id: str,
        record: SessionRecord,
        phase: Phase,
        roles: list[str],
    ) -> Optional[list[RoleOutcome]]:
        """
        Invoke ``roles`` concurrently.

        Returns:
            Outcomes in role-name order, or None if the session was
            terminated (cancelled) while the roles ran.
        """
        poll = self.config.timeouts.poll_interval_seconds
        workers = max(1, min(len(roles), self.config.coordinator.max_workers))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="relay-dispatch")
        futures: dict[Future, str] = {}
        try:
            for role in roles:
                futures[pool.submit(self._invoke_with_retry, session_id, record, phase, role)] = role

            pending = set(futures)
            while pending:
                _, pending = wait(pending, timeout=poll, return_when=FIRST_COMPLETED)
                if pending and self._externally_terminated(session_id):
                    self._cancel_tokens(session_id, "session cancelled")
                    self._log("dispatch_abandoned", {
                        "session_id": session_id,
                        "pending": sorted(futures[f] for f in pending),
                    }, level="warn")
                    return None
        finally:
            pool.shutdown(wait=False)

        outcomes = {futures[f]: f.result() for f in futures}
        return [outcomes[role] for role in sorted(outcomes)]

    def _planning_rounds(self, session_id: str) -> int:
        """Dispatches already made while planning, counted from the log."""
        return sum(
            1 for entry in self.context.read(session_id)
            if entry.role == COORDINATOR_ROLE
            and entry.kind == EntryKind.NOTE
            and entry.phase == Phase.PLANNING
            and "dispatch" in entry.data
        )

    def _note_dispatch(self, session_id: str, phase: Phase, roles: list[str]) -> None:
        entry = ContextEntry(
            role=COORDINATOR_ROLE,
            phase=phase,
            content=f"dispatching {', '.join(roles)}",
            data={"dispatch": roles},
        )
        self.context.append_with_retry(
            session_id, entry, max_attempts=self.config.retry.max_append_attempts
        )

    def step(self, session_id: str) -> Phase:
        """
        Perform one dispatch decision.

        Reads the phase and artifact set once, dispatches every eligible
        role, then evaluates the exit transition of the phase.

        Returns:
            The session phase after the step.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        record = self.context.load(session_id)
        phase = self.context.current_phase(session_id)
        if phase.is_terminal:
            return phase

        artifacts = self._artifact_set(session_id, record)

        if phase == Phase.PLANNING and self._plans_complete(record, artifacts):
            return self._plans_ready(session_id, phase)
        if phase == Phase.READY_FOR_EXECUTION:
            return self._transition(session_id, phase, Phase.EXECUTING, "plans ready")

        roles, missing = self._eligible(phase, record, artifacts)
        if not roles:
            if missing:
                detail = "; ".join(f"{r} needs {', '.join(m)}" for r, m in sorted(missing.items()))
                reason = f"missing inputs: {detail}"
            else:
                reason = f"no eligible role for phase {phase.value}"
            return self._fail_stuck(session_id, phase, reason)

        try:
            self._note_dispatch(session_id, phase, roles)
        except StalePhaseError:
            return self.context.current_phase(session_id)

        outcomes = self._dispatch(session_id, record, phase, roles)
        if outcomes is None:
            return self.context.current_phase(session_id)

        failures = [o for o in outcomes if not o.ok]
        if failures:
            current = self.context.current_phase(session_id)
            if current.is_terminal:
                return current
            for outcome in failures:
                self._record_failure(session_id, phase, outcome.role, outcome.error)
            first = failures[0].error
            return self._fail(session_id, phase, str(first), first.kind)

        return self._exit(session_id, record, phase)

    def _plans_ready(self, session_id: str, phase: Phase) -> Phase:
        """Move a fully planned session through READY_FOR_EXECUTION into EXECUTING."""
        current = self._transition(
            session_id, phase, Phase.READY_FOR_EXECUTION, "all requested plans registered"
        )
        if current != Phase.READY_FOR_EXECUTION:
            return current
        return self._transition(session_id, current, Phase.EXECUTING, "plans ready")

    def _exit(self, session_id: str, record: SessionRecord, phase: Phase) -> Phase:
        """Evaluate the exit transition after a successful dispatch."""
        if phase == Phase.PLANNING:
            artifacts = self._artifact_set(session_id, record)
            if self._plans_complete(record, artifacts):
                return self._plans_ready(session_id, phase)
            rounds = self._planning_rounds(session_id)
            if rounds >= self.config.coordinator.max_planning_rounds:
                missing = ", ".join(self._missing_plans(record, artifacts))
                return self._fail_stuck(session_id, phase, f"planning incomplete: missing {missing}")
            self._log("planning_incomplete", {
                "session_id": session_id,
                "round": rounds,
                "missing": self._missing_plans(record, artifacts),
            })
            return phase

        if phase == Phase.EXECUTING:
            if record.review_requested:
                return self._transition(session_id, phase, Phase.REVIEWING, "executor completed")
            return self._transition(
                session_id, phase, Phase.DONE, "executor completed, review not requested"
            )

        if phase == Phase.REVIEWING:
            report = self.reports(session_id).latest()
            if report is None:
                return self._fail(
                    session_id, phase, "reviewer produced no report", ErrorKind.NOT_FOUND
                )
            counts = report.severity_counts
            if not report.has_major and record.refactor_requested:
                return self._transition(
                    session_id, phase, Phase.REFACTORING, "no major findings",
                    {"report": report.report_id, "severity_counts": counts},
                )
            reason = "major findings" if report.has_major else "review complete"
            return self._transition(
                session_id, phase, Phase.DONE, reason,
                {"report": report.report_id, "severity_counts": counts},
            )

        if phase == Phase.REFACTORING:
            return self._transition(session_id, phase, Phase.DONE, "refactor completed")

        return phase

    def run(self, session_id: str) -> Phase:
        """
        Step the session until it reaches DONE or FAILED.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        phase = self.context.current_phase(session_id)
        while not phase.is_terminal:
            phase = self.step(session_id)
        self._log("session_finished", {"session_id": session_id, "phase": phase.value})
        return phase

    # =========================================================================
    # Cancellation and status
    # =========================================================================

    def cancel(self, session_id: str, reason: str = "cancelled by user") -> Phase:
        """
        Force the session to FAILED.

        Appends a cancel entry, sets the tokens of in-flight invocations of
        this process, then appends the FAILED transition. Artifacts already
        written stay in place. A terminal session is left unchanged.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        while True:
            phase = self.context.current_phase(session_id)
            if phase.is_terminal:
                self._log("cancel_ignored", {"session_id": session_id, "phase": phase.value})
                return phase

            entry = ContextEntry(
                role=COORDINATOR_ROLE,
                phase=phase,
                content=f"cancel requested: {reason}",
                kind=EntryKind.CANCEL,
                data={"reason": reason},
            )
            try:
                self.context.append_with_retry(
                    session_id, entry, max_attempts=self.config.retry.max_append_attempts
                )
                break
            except StalePhaseError:
                # The coordinator moved on meanwhile; cancel the newer phase
                continue

        self._cancel_tokens(session_id, reason)
        return self._fail(session_id, phase, f"cancelled: {reason}", ErrorKind.CANCELLED)

    def status(self, session_id: str) -> SessionStatus:
        """
        Snapshot of a session for display.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        record = self.context.load(session_id)
        log = self.context.read(session_id)
        entries = log.entries()

        phase = Phase.PLANNING
        last_transition: Optional[ContextEntry] = None
        last_failure: Optional[ContextEntry] = None
        for entry in entries:
            if entry.is_transition:
                phase = entry.phase
                last_transition = entry
            elif entry.kind == EntryKind.FAILURE:
                last_failure = entry

        last_error = None
        if phase == Phase.FAILED and last_transition is not None:
            last_error = {
                "error_kind": last_transition.data.get("error_kind"),
                "message": last_transition.data.get("reason", ""),
            }
        elif last_failure is not None:
            last_error = dict(last_failure.data)

        pending: list[str] = []
        if not phase.is_terminal and phase != Phase.READY_FOR_EXECUTION:
            pending, _ = self._eligible(phase, record, self._artifact_set(session_id, record))

        reports = self.reports(session_id)
        artifacts = [f"plan:{t}/{f}" for t, f in self.plans(session_id).list()]
        artifacts.extend(f"report:{r}" for r in reports.list())

        return SessionStatus(
            session_id=session_id,
            phase=phase,
            pending_roles=pending,
            last_entry=entries[-1] if entries else None,
            last_error=last_error,
            report=reports.latest() if phase.is_terminal else None,
            artifacts=artifacts,
        )
