"""
Model-backed role runner.

Builds a prompt from the role contract, the rule documents, the context log
and the artifacts the role needs, sends it to the external model CLI and
turns the JSON reply into an AgentResult. File changes and commands the
model proposes are applied through RoleTools so the contract is enforced.

The model is asked for the shape in REPLY_FORMAT; a bare object without the
fence is accepted too.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any, Optional

from agent_relay.agents.base import AgentResult, AgentRunner, RoleInvocation
from agent_relay.agents.tools import model_tools_for
from agent_relay.errors import InvocationCancelledError, NotFoundError
from agent_relay.llm_clients import ModelCliRunner
from agent_relay.models import PLAN_ARTIFACT, REPORT_ARTIFACT, PlanDraft, ReviewReport

if TYPE_CHECKING:
    from agent_relay.config import RelayConfig
    from agent_relay.logger import RelayLogger

# Context entries included in the prompt, newest last
CONTEXT_WINDOW = 40

REPLY_FORMAT = """## Reply format
Reply with a single JSON object, inside a ```json fence. Leave out keys you
have nothing for:

    {
      "plans": [{"type": "<plan type>", "body": "<plan text>"}],
      "report": {
        "summary": "<one paragraph>",
        "findings": [{"severity": "major|medium|minor", "description": "...",
                      "rule": "<convention>", "path": "<file>"}]
      },
      "files": [{"action": "create", "path": "<file>", "content": "..."},
                {"action": "edit", "path": "<file>", "old": "...", "new": "..."}],
      "commands": ["<shell command>"],
      "notes": "what was done and why"
    }"""


def extract_json(text: str) -> Optional[dict[str, Any]]:
    """
    Pull a JSON object out of a model reply.

    Handles replies that wrap the JSON in a markdown fence or surround it
    with prose. Returns None if nothing parses to an object.
    """
    match = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
    if match:
        candidate = match.group(1)
    else:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1:
            return None
        candidate = text[start:end + 1]

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class ModelRoleAgent(AgentRunner):
    """Runs any role by prompting the external model CLI."""

    name = "model"

    def __init__(
        self,
        config: RelayConfig,
        logger: Optional[RelayLogger] = None,
        llm_runner: Optional[ModelCliRunner] = None,
    ) -> None:
        self.config = config
        self._logger = logger
        self._llm = llm_runner

    @property
    def llm(self) -> ModelCliRunner:
        """Get the model runner (lazy initialization)."""
        if self._llm is None:
            self._llm = ModelCliRunner(config=self.config, logger=self._logger)
        return self._llm

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"agent": self.name}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _check_cancelled(self, invocation: RoleInvocation) -> None:
        if invocation.cancel_token.cancelled:
            raise InvocationCancelledError(
                invocation.role, f"cancelled: {invocation.cancel_token.reason or 'no reason'}"
            )

    # Prompt

    def _plans_section(self, invocation: RoleInvocation) -> str:
        """
        Plans for the feature.

        A role that requires plans gets every requested type resolved, so a
        missing one raises PlanNotFoundError instead of being guessed.
        """
        parts = []
        if PLAN_ARTIFACT in invocation.contract.required_inputs:
            for plan_type in sorted(invocation.plan_types):
                plan = invocation.plans.resolve(plan_type, invocation.feature)
                parts.append(f"### Plan: {plan_type} (by {plan.role})\n{plan.body}")
        else:
            for plan_type, feature in invocation.plans.list():
                if feature != invocation.feature:
                    continue
                plan = invocation.plans.resolve(plan_type, feature)
                parts.append(f"### Plan: {plan_type} (by {plan.role})\n{plan.body}")
        return "\n\n".join(parts) if parts else "No plans registered yet."

    def _report_section(self, invocation: RoleInvocation) -> str:
        report = invocation.reports.latest()
        if report is None:
            if REPORT_ARTIFACT in invocation.contract.required_inputs:
                raise NotFoundError(f"no review report for session {invocation.session_id}")
            return ""
        lines = [f"Review report {report.report_id}: {report.summary}"]
        for finding in report.findings:
            where = f" [{finding.path}]" if finding.path else ""
            rule = f" ({finding.rule})" if finding.rule else ""
            lines.append(f"- {finding.severity.value.upper()}{where}{rule}: {finding.description}")
        return "\n".join(lines)

    def _context_section(self, invocation: RoleInvocation) -> str:
        entries = invocation.context.entries()[-CONTEXT_WINDOW:]
        if not entries:
            return "No entries yet."
        return "\n".join(
            f"[{e.seq}] {e.role} ({e.phase.value}/{e.kind.value}): {e.content}"
            for e in entries
        )

    def build_prompt(self, invocation: RoleInvocation) -> str:
        """Assemble the full prompt for one invocation."""
        contract = invocation.contract
        rules = "\n\n".join(
            f"### Rules for {rule.glob}\n{rule.text}" for rule in invocation.rules
        ) or "None."
        capabilities = ", ".join(sorted(c.value for c in contract.capabilities))
        plan_types = ", ".join(sorted(contract.plan_types)) or "none"

        sections = [
            f"You are the {contract.name} role. {contract.description}".strip(),
            f"Task: {invocation.task}",
            f"Feature: {invocation.feature}",
            f"Allowed capabilities: {capabilities}",
            f"Plan types you may produce: {plan_types}",
            f"May produce a review report: {'yes' if contract.produces_report else 'no'}",
            "## Conventions\n" + rules,
            "## Plans\n" + self._plans_section(invocation),
        ]
        report = self._report_section(invocation)
        if report:
            sections.append("## Latest review\n" + report)
        sections.append("## Session context\n" + self._context_section(invocation))
        sections.append(REPLY_FORMAT)
        return "\n\n".join(sections)

    # Reply

    def _apply_files(self, invocation: RoleInvocation, files: list[dict[str, Any]]) -> list[str]:
        notes = []
        for op in files:
            action = op.get("action", "create")
            path = op["path"]
            if action == "create":
                invocation.tools.write_new_file(path, op.get("content", ""))
                notes.append(f"created {path}")
            elif action == "edit":
                invocation.tools.edit_file(path, op["old"], op.get("new", ""))
                notes.append(f"edited {path}")
            else:
                raise ValueError(f"unknown file action {action!r} for {path}")
            self._check_cancelled(invocation)
        return notes

    def _run_commands(self, invocation: RoleInvocation, commands: list[str]) -> list[str]:
        notes = []
        for command in commands:
            result = invocation.tools.run_command(command)
            notes.append(f"$ {command} -> exit {result.returncode}")
            self._check_cancelled(invocation)
        return notes

    def run(self, invocation: RoleInvocation) -> AgentResult:
        """
        Prompt the model for one role invocation.

        Returns:
            AgentResult with plans, report and notes taken from the reply.

        Raises:
            PlanNotFoundError: If a required plan is missing.
            UnauthorizedError: If a proposed change is outside the contract.
            ModelInvocationError: If the model CLI fails.
        """
        self._check_cancelled(invocation)
        self._log("role_run_start", {
            "role": invocation.role,
            "session_id": invocation.session_id,
            "attempt": invocation.attempt,
        })

        prompt = self.build_prompt(invocation)
        result = self.llm.run(
            prompt,
            allowed_tools=model_tools_for(invocation.contract),
            timeout=invocation.timeout,
            cancel_token=invocation.cancel_token,
        )

        reply = extract_json(result.text)
        if reply is None:
            self._log("role_reply_unparseable", {
                "role": invocation.role,
                "reply": result.text[:500],
            }, level="warn")
            return AgentResult.failure_result(
                "model reply is not a JSON object", cost_usd=result.total_cost_usd
            )

        plans = []
        for data in reply.get("plans") or []:
            draft = PlanDraft.from_dict(data)
            if not draft.plan_type:
                # A lone plan from a single-type planner is unambiguous
                if len(invocation.contract.plan_types) != 1:
                    return AgentResult.failure_result(
                        "plan in model reply has no type", cost_usd=result.total_cost_usd
                    )
                draft.plan_type = next(iter(invocation.contract.plan_types))
            plans.append(draft)
        report = None
        if reply.get("report"):
            report_data = dict(reply["report"])
            report_data["role"] = invocation.role
            report = ReviewReport.from_dict(report_data)

        notes = []
        raw_notes = reply.get("notes")
        if isinstance(raw_notes, list):
            notes.extend(str(n) for n in raw_notes)
        elif raw_notes:
            notes.append(str(raw_notes))

        notes.extend(self._apply_files(invocation, reply.get("files") or []))
        notes.extend(self._run_commands(invocation, reply.get("commands") or []))

        self._log("role_run_complete", {
            "role": invocation.role,
            "plans": len(plans),
            "report": report is not None,
            "touched": invocation.tools.touched,
            "cost_usd": result.total_cost_usd,
        })
        return AgentResult.success_result(
            plans=plans, report=report, notes=notes, cost_usd=result.total_cost_usd
        )
