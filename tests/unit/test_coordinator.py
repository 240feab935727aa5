"""Tests for Coordinator dispatch decisions and failure handling."""

import json
from dataclasses import replace

import pytest

from agent_relay.agents.base import AgentResult
from agent_relay.config import RetryConfig, TimeoutConfig
from agent_relay.coordinator import Coordinator
from agent_relay.errors import InvalidRequestError, SessionNotFoundError
from agent_relay.logger import RelayLogger
from agent_relay.models import EntryKind, Phase
from agent_relay.roles import DEFAULT_CONTRACTS, RoleRegistry


def _fail_always(message):
    def handler(invocation):
        raise RuntimeError(message)
    return handler


def _last_transition(coordinator, session_id):
    return [e for e in coordinator.context.read(session_id) if e.is_transition][-1]


class TestStartSession:

    def test_creates_record_and_enters_planning(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("Build checkout", "checkout-form", ["ui", "logic", "ui"])

        assert sid.startswith("sess_")
        record = coordinator.context.load(sid)
        assert record.plan_types == ["ui", "logic"]
        assert coordinator.context.current_phase(sid) == Phase.PLANNING
        first = coordinator.context.read(sid).entries()[0]
        assert first.is_transition
        assert first.data["from"] is None

    def test_ids_are_unique(self, make_coordinator):
        coordinator = make_coordinator()
        ids = {coordinator.start_session("t", "f", ["ui"]) for _ in range(5)}
        assert len(ids) == 5

    @pytest.mark.parametrize("task,feature,plans", [
        ("", "checkout-form", ["ui"]),
        ("   ", "checkout-form", ["ui"]),
        ("Build", "checkout/form", ["ui"]),
        ("Build", "", ["ui"]),
        ("Build", "checkout-form", ["../ui"]),
        ("Build", "checkout form", ["ui"]),
        ("Build", "checkout-form", []),
    ])
    def test_rejects_malformed_requests(self, make_coordinator, task, feature, plans):
        with pytest.raises(InvalidRequestError):
            make_coordinator().start_session(task, feature, plans)

    def test_unknown_session(self, make_coordinator):
        coordinator = make_coordinator()
        with pytest.raises(SessionNotFoundError):
            coordinator.step("sess_missing")
        with pytest.raises(SessionNotFoundError):
            coordinator.status("sess_missing")


class TestEligibility:

    def test_planners_for_requested_types_sorted(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("t", "checkout-form", ["ui", "nextjs-architecture", "logic"])
        assert coordinator.eligible_roles(sid) == [
            "architecture-planner", "logic-planner", "ui-planner",
        ]

    def test_unrequested_planners_excluded(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("t", "checkout-form", ["ui"])
        assert coordinator.eligible_roles(sid) == ["ui-planner"]

    def test_satisfied_planners_excluded(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("t", "checkout-form", ["ui", "logic"])
        coordinator.plans(sid).register("ui", "checkout-form", "body", "ui-planner")
        assert coordinator.eligible_roles(sid) == ["logic-planner"]

    def test_deterministic_for_same_snapshot(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("t", "checkout-form", ["ui", "logic"])
        assert coordinator.eligible_roles(sid) == coordinator.eligible_roles(sid)

    def test_planner_without_declared_types_always_runs(self, make_coordinator):
        scout = replace(DEFAULT_CONTRACTS[0], name="scout", produces=frozenset())
        registry = RoleRegistry(list(DEFAULT_CONTRACTS) + [scout])
        coordinator = make_coordinator(registry=registry)
        sid = coordinator.start_session("t", "checkout-form", ["ui"])
        assert coordinator.eligible_roles(sid) == ["scout", "ui-planner"]

    def test_terminal_session_has_no_eligible_roles(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("t", "checkout-form", ["ui"])
        coordinator.cancel(sid)
        assert coordinator.eligible_roles(sid) == []


class TestFailures:

    def test_failed_invocation_retried_once_then_failed(self, make_coordinator, scripted):
        runner = scripted(_fail_always("model crashed"))
        coordinator = make_coordinator(runners={"ui-planner": runner})
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.step(sid) == Phase.FAILED
        assert runner.calls == [("ui-planner", 1), ("ui-planner", 2)]

        failures = coordinator.context.failures(sid)
        assert len(failures) == 1
        assert failures[0].data["role"] == "ui-planner"
        assert failures[0].data["error_kind"] == "role_invocation"
        assert "model crashed" in failures[0].data["message"]

    def test_retry_can_succeed(self, make_coordinator, scripted, results):
        def flaky(invocation):
            if invocation.attempt == 1:
                raise RuntimeError("transient")
            return results["plan"]("ui")

        runner = scripted(flaky)
        coordinator = make_coordinator(runners={"ui-planner": runner})
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.step(sid) == Phase.EXECUTING
        assert len(runner.calls) == 2
        assert coordinator.context.failures(sid) == []

    def test_retry_count_is_configurable(self, make_coordinator, scripted, config):
        runner = scripted(_fail_always("nope"))
        coordinator = make_coordinator(
            runners={"ui-planner": runner},
            config=replace(config, retry=RetryConfig(max_invocation_attempts=3)),
        )
        sid = coordinator.start_session("t", "checkout-form", ["ui"])
        coordinator.step(sid)
        assert len(runner.calls) == 3

    def test_unsuccessful_result_counts_as_failure(self, make_coordinator, scripted):
        runner = scripted(lambda inv: AgentResult.failure_result("reply was empty"))
        coordinator = make_coordinator(runners={"ui-planner": runner})
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.step(sid) == Phase.FAILED
        assert coordinator.status(sid).last_error["message"] == "reply was empty"

    def test_unauthorized_output_not_retried(self, make_coordinator, scripted, results):
        runner = scripted(lambda inv: results["plan"]("logic"))
        coordinator = make_coordinator(runners={"ui-planner": runner})
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.step(sid) == Phase.FAILED
        assert runner.calls == [("ui-planner", 1)]
        assert not coordinator.plans(sid).has("logic", "checkout-form")
        assert coordinator.status(sid).last_error["error_kind"] == "unauthorized"

    def test_unauthorized_tool_use_not_retried(self, make_coordinator, scripted, repo_root):
        def sneaky(invocation):
            invocation.tools.write_new_file("app/page.tsx", "export {}")
            return AgentResult.success_result()

        runner = scripted(sneaky)
        coordinator = make_coordinator(runners={"ui-planner": runner})
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.step(sid) == Phase.FAILED
        assert len(runner.calls) == 1
        assert not (repo_root / "app" / "page.tsx").exists()

    def test_missing_runner_fails_session(self, make_coordinator):
        coordinator = make_coordinator(runners={})
        sid = coordinator.start_session("t", "checkout-form", ["ui"])
        assert coordinator.step(sid) == Phase.FAILED
        assert "no runner configured" in coordinator.status(sid).last_error["message"]

    def test_missing_inputs_reported(self, make_coordinator, happy_runners):
        contracts = [
            replace(c, required_inputs=c.required_inputs | {"report"}) if c.name == "executor" else c
            for c in DEFAULT_CONTRACTS
        ]
        coordinator = make_coordinator(runners=happy_runners, registry=RoleRegistry(contracts))
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.run(sid) == Phase.FAILED
        transition = _last_transition(coordinator, sid)
        assert transition.data["from"] == "executing"
        assert transition.data["error_kind"] == "no_eligible_role"
        assert transition.data["reason"] == "missing inputs: executor needs report"

    def test_no_eligible_role_for_phase(self, make_coordinator, happy_runners):
        registry = RoleRegistry([c for c in DEFAULT_CONTRACTS if c.name != "reviewer"])
        coordinator = make_coordinator(runners=happy_runners, registry=registry)
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.run(sid) == Phase.FAILED
        transition = _last_transition(coordinator, sid)
        assert transition.data["reason"] == "no eligible role for phase reviewing"
        assert transition.data["error_kind"] == "no_eligible_role"
        failure = coordinator.context.failures(sid)[-1]
        assert failure.data["role"] == "coordinator"
        assert failure.data["error_kind"] == "no_eligible_role"

    def test_timeout_cancels_token_and_retries(self, make_coordinator, scripted, config):
        seen_reasons = []

        def stuck(invocation):
            invocation.cancel_token.wait(5)
            seen_reasons.append(invocation.cancel_token.reason)
            raise RuntimeError("gave up")

        runner = scripted(stuck)
        timeouts = TimeoutConfig(role_seconds=0.2, store_lock_seconds=5.0, poll_interval_seconds=0.05)
        coordinator = make_coordinator(
            runners={"ui-planner": runner}, config=replace(config, timeouts=timeouts)
        )
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.step(sid) == Phase.FAILED
        assert len(runner.calls) == 2
        failure = coordinator.context.failures(sid)[0]
        assert failure.data["cause_kind"] == "timeout"

    def test_planning_gives_up_after_max_rounds(self, make_coordinator, scripted, config):
        runner = scripted(lambda inv: AgentResult.success_result(notes=["thinking"]))
        coordinator = make_coordinator(runners={"ui-planner": runner})
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.step(sid) == Phase.PLANNING
        assert coordinator.run(sid) == Phase.FAILED
        assert len(runner.calls) == config.coordinator.max_planning_rounds
        transition = _last_transition(coordinator, sid)
        assert transition.data["reason"] == "planning incomplete: missing ui"


class TestCancelAndStatus:

    def test_cancel_writes_poison_entry_then_failed(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        assert coordinator.cancel(sid, "changed my mind") == Phase.FAILED
        entries = coordinator.context.read(sid).entries()
        assert entries[-2].kind == EntryKind.CANCEL
        assert entries[-1].is_transition
        assert entries[-1].data["error_kind"] == "cancelled"
        assert entries[-1].data["reason"] == "cancelled: changed my mind"

    def test_cancel_losing_to_completion_keeps_done(self, make_coordinator, happy_runners,
                                                   monkeypatch):
        driver = make_coordinator(runners=happy_runners)
        sid = driver.start_session("t", "checkout-form", ["ui"])
        while driver.context.current_phase(sid) != Phase.REVIEWING:
            driver.step(sid)

        # The driver finishes between the cancel entry and the FAILED transition
        canceller = make_coordinator()
        monkeypatch.setattr(canceller, "_cancel_tokens", lambda session_id, reason: driver.run(session_id))

        assert canceller.cancel(sid, "too late") == Phase.DONE
        assert driver.context.current_phase(sid) == Phase.DONE
        assert Phase.FAILED not in [e.phase for e in driver.context.read(sid) if e.is_transition]

    def test_cancel_terminal_session_is_noop(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("t", "checkout-form", ["ui"])
        coordinator.cancel(sid)
        length = len(coordinator.context.read(sid))

        assert coordinator.cancel(sid) == Phase.FAILED
        assert len(coordinator.context.read(sid)) == length

    def test_step_on_terminal_session_does_nothing(self, make_coordinator, scripted):
        runner = scripted(_fail_always("unused"))
        coordinator = make_coordinator(runners={"ui-planner": runner})
        sid = coordinator.start_session("t", "checkout-form", ["ui"])
        coordinator.cancel(sid)

        assert coordinator.step(sid) == Phase.FAILED
        assert runner.calls == []

    def test_status_of_new_session(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("t", "checkout-form", ["ui"])

        status = coordinator.status(sid)
        assert status.phase == Phase.PLANNING
        assert status.pending_roles == ["ui-planner"]
        assert status.last_error is None
        assert status.report is None
        assert status.last_entry.is_transition

    def test_status_lists_artifacts(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("t", "checkout-form", ["ui", "logic"])
        coordinator.plans(sid).register("ui", "checkout-form", "body", "ui-planner")

        status = coordinator.status(sid)
        assert status.artifacts == ["plan:ui/checkout-form"]
        assert status.pending_roles == ["logic-planner"]


class TestLogging:

    def test_role_events_carry_the_role(self, config, store, registry, happy_runners):
        logger = RelayLogger("relay", config)
        coordinator = Coordinator(config, store, registry, runners=happy_runners, logger=logger)
        sid = coordinator.start_session("t", "checkout-form", ["ui"])
        coordinator.step(sid)

        lines = logger._get_log_path().read_text().splitlines()
        events = [json.loads(line) for line in lines if line.strip()]
        by_type = {e["event_type"]: e for e in events}
        assert by_type["role_completed"]["role"] == "ui-planner"
        assert "role" not in by_type["session_started"]
