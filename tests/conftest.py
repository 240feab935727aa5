# Shared fixtures for agent-relay tests

import threading
from typing import Callable, Optional

import pytest
from typer.testing import CliRunner

from agent_relay.agents.base import AgentResult, AgentRunner, RoleInvocation
from agent_relay.artifact_store import ArtifactStore, clear_store_cache
from agent_relay.config import RelayConfig, TimeoutConfig, clear_config_cache
from agent_relay.context import SessionContextManager
from agent_relay.coordinator import Coordinator
from agent_relay.logger import clear_logger_cache
from agent_relay.models import Finding, PlanDraft, ReviewReport, Severity
from agent_relay.roles import RoleRegistry, clear_registry_cache


class ScriptedRunner(AgentRunner):
    """Runner driven by a Python callable instead of a model."""

    name = "scripted"

    def __init__(self, handler: Callable[[RoleInvocation], AgentResult]) -> None:
        self.handler = handler
        self.calls: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def run(self, invocation: RoleInvocation) -> AgentResult:
        with self._lock:
            self.calls.append((invocation.role, invocation.attempt))
        return self.handler(invocation)


def plan_result(plan_type: str, body: Optional[str] = None) -> AgentResult:
    return AgentResult.success_result(
        plans=[PlanDraft(plan_type=plan_type, body=body or f"{plan_type} plan body")],
        notes=[f"{plan_type} plan ready"],
    )


def report_result(*severities: Severity) -> AgentResult:
    findings = [
        Finding(severity=s, description=f"{s.value} issue", rule="naming", path="app/page.tsx")
        for s in severities
    ]
    return AgentResult.success_result(
        report=ReviewReport(findings=findings, summary="review done"),
        notes=["reviewed"],
    )


@pytest.fixture(autouse=True)
def clear_caches():
    """Module-level caches must not leak between tests."""
    clear_config_cache()
    clear_logger_cache()
    clear_store_cache()
    clear_registry_cache()
    yield
    clear_config_cache()
    clear_logger_cache()
    clear_store_cache()
    clear_registry_cache()


@pytest.fixture
def repo_root(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def config(repo_root):
    return RelayConfig(
        repo_root=str(repo_root),
        timeouts=TimeoutConfig(role_seconds=10.0, store_lock_seconds=5.0, poll_interval_seconds=0.05),
    )


@pytest.fixture
def store(config):
    return ArtifactStore(config.store_path, lock_timeout=5.0)


@pytest.fixture
def registry():
    return RoleRegistry()


@pytest.fixture
def context(store):
    return SessionContextManager(store)


@pytest.fixture
def scripted():
    """The ScriptedRunner class."""
    return ScriptedRunner


@pytest.fixture
def results():
    """Factories for common runner results."""
    return {"plan": plan_result, "report": report_result}


@pytest.fixture
def happy_runners():
    """Runners that succeed for every built-in role; reviewer finds nothing."""

    def executor(invocation: RoleInvocation) -> AgentResult:
        for plan_type in invocation.plan_types:
            invocation.plans.resolve(plan_type, invocation.feature)
        invocation.tools.write_new_file(f"app/{invocation.feature}/page.tsx", "export {}\n")
        return AgentResult.success_result(notes=["implemented"])

    return {
        "ui-planner": ScriptedRunner(lambda inv: plan_result("ui")),
        "logic-planner": ScriptedRunner(lambda inv: plan_result("logic")),
        "architecture-planner": ScriptedRunner(lambda inv: plan_result("nextjs-architecture")),
        "executor": ScriptedRunner(executor),
        "reviewer": ScriptedRunner(lambda inv: report_result()),
        "refactorer": ScriptedRunner(lambda inv: AgentResult.success_result(notes=["refactored"])),
    }


@pytest.fixture
def make_coordinator(config, store, registry):
    """Build a Coordinator over the test store with the given runners."""

    def make(runners=None, default_runner=None, **overrides):
        return Coordinator(
            overrides.get("config", config),
            store,
            overrides.get("registry", registry),
            runners=runners,
            default_runner=default_runner,
        )

    return make


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
