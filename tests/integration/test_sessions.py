"""End-to-end session flows through the coordinator with scripted runners."""

import threading

import pytest

from agent_relay.agents.base import AgentResult
from agent_relay.context import SessionContextManager
from agent_relay.errors import InvocationCancelledError
from agent_relay.models import COORDINATOR_ROLE, ContextEntry, EntryKind, Phase, Severity

pytestmark = pytest.mark.integration

FEATURE = "checkout-form"


def _phases(coordinator, session_id):
    return [e.phase for e in coordinator.context.read(session_id) if e.is_transition]


class TestPlanningGate:

    def test_waits_for_every_requested_plan(self, make_coordinator):
        coordinator = make_coordinator()
        sid = coordinator.start_session("Build the checkout form", FEATURE, ["ui", "logic"])
        plans = coordinator.plans(sid)

        plans.register("ui", FEATURE, "ui plan", "ui-planner")
        assert coordinator.context.current_phase(sid) == Phase.PLANNING
        assert coordinator.eligible_roles(sid) == ["logic-planner"]

        plans.register("logic", FEATURE, "logic plan", "logic-planner")
        assert coordinator.step(sid) == Phase.EXECUTING
        assert _phases(coordinator, sid) == [
            Phase.PLANNING, Phase.READY_FOR_EXECUTION, Phase.EXECUTING,
        ]
        assert coordinator.eligible_roles(sid) == ["executor"]

    def test_partial_dispatch_stays_in_planning(self, make_coordinator, scripted, results):
        runners = {
            "ui-planner": scripted(lambda inv: results["plan"]("ui")),
            "logic-planner": scripted(lambda inv: AgentResult.success_result(notes=["later"])),
        }
        coordinator = make_coordinator(runners=runners)
        sid = coordinator.start_session("Build the checkout form", FEATURE, ["ui", "logic"])

        assert coordinator.step(sid) == Phase.PLANNING
        assert coordinator.plans(sid).has("ui", FEATURE)
        assert coordinator.eligible_roles(sid) == ["logic-planner"]

        runners["logic-planner"].handler = lambda inv: results["plan"]("logic")
        assert coordinator.step(sid) == Phase.EXECUTING
        assert runners["ui-planner"].calls == [("ui-planner", 1)]

    def test_executor_missing_plan_fails_after_retry(self, make_coordinator, happy_runners):
        coordinator = make_coordinator(runners=happy_runners)
        sid = coordinator.start_session("Build the checkout form", FEATURE, ["ui", "logic"])
        coordinator.plans(sid).register("ui", FEATURE, "ui plan", "ui-planner")
        # Jump ahead without the logic plan
        coordinator.context.append_with_retry(sid, ContextEntry(
            role=COORDINATOR_ROLE, phase=Phase.EXECUTING, content="forced",
            kind=EntryKind.TRANSITION, data={"to": "executing"},
        ))

        assert coordinator.step(sid) == Phase.FAILED
        assert happy_runners["executor"].calls == [("executor", 1), ("executor", 2)]

        status = coordinator.status(sid)
        assert status.last_error["message"] == "missing plan: logic/checkout-form"
        failure = coordinator.context.failures(sid)[0]
        assert failure.data["role"] == "executor"
        assert failure.data["cause_kind"] == "not_found"


class TestReviewOutcomes:

    def test_happy_path_without_refactor(self, make_coordinator, happy_runners, repo_root):
        coordinator = make_coordinator(runners=happy_runners)
        sid = coordinator.start_session("Build the checkout form", FEATURE, ["ui", "logic"])

        assert coordinator.run(sid) == Phase.DONE
        assert _phases(coordinator, sid) == [
            Phase.PLANNING, Phase.READY_FOR_EXECUTION, Phase.EXECUTING,
            Phase.REVIEWING, Phase.DONE,
        ]
        assert (repo_root / "app" / FEATURE / "page.tsx").exists()
        assert happy_runners["refactorer"].calls == []
        assert happy_runners["architecture-planner"].calls == []

        status = coordinator.status(sid)
        assert status.report is not None
        assert status.pending_roles == []
        assert "plan:logic/checkout-form" in status.artifacts
        assert any(a.startswith("report:") for a in status.artifacts)

    def test_clean_review_with_refactor_requested(self, make_coordinator, happy_runners, results):
        happy_runners["reviewer"].handler = lambda inv: results["report"](
            Severity.MINOR, Severity.MEDIUM
        )
        coordinator = make_coordinator(runners=happy_runners)
        sid = coordinator.start_session("Build", FEATURE, ["ui"], refactor=True)

        assert coordinator.run(sid) == Phase.DONE
        assert _phases(coordinator, sid)[-2:] == [Phase.REFACTORING, Phase.DONE]
        assert happy_runners["refactorer"].calls == [("refactorer", 1)]

        to_refactor = [e for e in coordinator.context.read(sid)
                       if e.is_transition and e.phase == Phase.REFACTORING][0]
        assert to_refactor.data["severity_counts"] == {"major": 0, "medium": 1, "minor": 1}

    def test_major_finding_skips_refactor(self, make_coordinator, happy_runners, results):
        happy_runners["reviewer"].handler = lambda inv: results["report"](Severity.MAJOR)
        coordinator = make_coordinator(runners=happy_runners)
        sid = coordinator.start_session("Build", FEATURE, ["ui"], refactor=True)

        assert coordinator.run(sid) == Phase.DONE
        assert Phase.REFACTORING not in _phases(coordinator, sid)
        assert happy_runners["refactorer"].calls == []

        status = coordinator.status(sid)
        assert status.report.has_major
        assert status.report.role == "reviewer"

    def test_review_not_requested(self, make_coordinator, happy_runners):
        coordinator = make_coordinator(runners=happy_runners)
        sid = coordinator.start_session("Build", FEATURE, ["ui"], review=False)

        assert coordinator.run(sid) == Phase.DONE
        assert Phase.REVIEWING not in _phases(coordinator, sid)
        assert happy_runners["reviewer"].calls == []

    def test_in_process_reviewer_reads_the_tree(self, make_coordinator, happy_runners, results):
        seen = {}

        def reviewer(invocation):
            seen["files"] = invocation.tools.search_glob("app/**/*.tsx")
            seen["hits"] = invocation.tools.search_text(r"export", glob="app/**/*.tsx")
            seen["page"] = invocation.tools.read_file(f"app/{FEATURE}/page.tsx")
            return results["report"]()

        happy_runners["reviewer"].handler = reviewer
        coordinator = make_coordinator(runners=happy_runners)
        sid = coordinator.start_session("Build", FEATURE, ["ui"])

        assert coordinator.run(sid) == Phase.DONE
        assert seen["files"] == [f"app/{FEATURE}/page.tsx"]
        assert seen["hits"] == [(f"app/{FEATURE}/page.tsx", 1, "export {}")]
        assert seen["page"] == "export {}\n"

    def test_reviewer_without_report_fails(self, make_coordinator, happy_runners):
        happy_runners["reviewer"].handler = lambda inv: AgentResult.success_result(notes=["lgtm"])
        coordinator = make_coordinator(runners=happy_runners)
        sid = coordinator.start_session("Build", FEATURE, ["ui"])

        assert coordinator.run(sid) == Phase.FAILED
        assert coordinator.status(sid).last_error["message"] == "reviewer produced no report"


class TestConcurrency:

    def test_planners_run_concurrently(self, make_coordinator, scripted, results):
        barrier = threading.Barrier(3, timeout=5)

        def planner(plan_type):
            def handler(invocation):
                barrier.wait()
                return results["plan"](plan_type)
            return handler

        runners = {
            "ui-planner": scripted(planner("ui")),
            "logic-planner": scripted(planner("logic")),
            "architecture-planner": scripted(planner("nextjs-architecture")),
        }
        coordinator = make_coordinator(runners=runners)
        sid = coordinator.start_session("Build", FEATURE, ["ui", "logic", "nextjs-architecture"])

        assert coordinator.step(sid) == Phase.EXECUTING

        completions = [e for e in coordinator.context.read(sid) if e.kind == EntryKind.COMPLETION]
        assert sorted(e.role for e in completions) == [
            "architecture-planner", "logic-planner", "ui-planner",
        ]
        seqs = [e.seq for e in coordinator.context.read(sid)]
        assert seqs == list(range(len(seqs)))

    def test_same_plan_key_is_last_writer_wins(self, make_coordinator, scripted, results):
        runners = {
            "ui-planner": scripted(lambda inv: results["plan"]("ui", "first ui plan")),
        }
        coordinator = make_coordinator(runners=runners)
        sid = coordinator.start_session("Build", FEATURE, ["ui"])
        coordinator.step(sid)

        plans = coordinator.plans(sid)
        assert plans.register("ui", FEATURE, "second ui plan", "ui-planner") == "first ui plan"
        assert plans.resolve("ui", FEATURE).body == "second ui plan"

    def test_two_coordinators_share_one_log(self, make_coordinator, happy_runners, store):
        first = make_coordinator(runners=happy_runners)
        second = make_coordinator(runners=happy_runners)
        sid = first.start_session("Build", FEATURE, ["ui"])

        assert first.step(sid) == Phase.EXECUTING
        assert second.context.current_phase(sid) == Phase.EXECUTING
        assert second.run(sid) == Phase.DONE

        observer = SessionContextManager(store)
        log = observer.read(sid)
        assert [e.seq for e in log] == list(range(len(log)))


class TestCancellation:

    def test_cancel_during_execution(self, make_coordinator, happy_runners, repo_root):
        started = threading.Event()

        def slow_executor(invocation):
            invocation.tools.write_new_file("app/partial.tsx", "export {}\n")
            started.set()
            invocation.cancel_token.wait(5)
            raise InvocationCancelledError(invocation.role, "stopped")

        happy_runners["executor"].handler = slow_executor
        coordinator = make_coordinator(runners=happy_runners)
        sid = coordinator.start_session("Build", FEATURE, ["ui"])

        outcome = {}
        driver = threading.Thread(target=lambda: outcome.update(phase=coordinator.run(sid)))
        driver.start()
        assert started.wait(5)

        assert coordinator.cancel(sid, "user pressed stop") == Phase.FAILED
        driver.join(10)

        assert not driver.is_alive()
        assert outcome["phase"] == Phase.FAILED
        assert happy_runners["executor"].calls == [("executor", 1)]

        entries = coordinator.context.read(sid).entries()
        cancels = [e for e in entries if e.kind == EntryKind.CANCEL]
        assert len(cancels) == 1
        assert cancels[0].data["reason"] == "user pressed stop"
        failed = [e for e in entries if e.is_transition and e.phase == Phase.FAILED]
        assert failed[0].data["error_kind"] == "cancelled"
        # Partial artifacts stay
        assert (repo_root / "app" / "partial.tsx").exists()
        assert coordinator.plans(sid).has("ui", FEATURE)

    def test_cancel_from_another_coordinator(self, make_coordinator, happy_runners):
        started = threading.Event()
        release = threading.Event()

        def blocking_reviewer(invocation):
            started.set()
            release.wait(5)
            return AgentResult.success_result(notes=["late"])

        happy_runners["reviewer"].handler = blocking_reviewer
        driver_coordinator = make_coordinator(runners=happy_runners)
        sid = driver_coordinator.start_session("Build", FEATURE, ["ui"])

        outcome = {}
        driver = threading.Thread(
            target=lambda: outcome.update(phase=driver_coordinator.run(sid))
        )
        driver.start()
        try:
            assert started.wait(5)
            assert make_coordinator().cancel(sid, "from cli") == Phase.FAILED
        finally:
            release.set()
        driver.join(10)

        assert outcome["phase"] == Phase.FAILED
        phases = _phases(driver_coordinator, sid)
        assert phases[-1] == Phase.FAILED
        assert Phase.DONE not in phases
