"""Tests for the poll-only governor."""

import threading
from unittest.mock import MagicMock

from governor.config import OVERRIDE_PRIORITY_RANK, GovernorConfig
from governor.dependencies import QUEUE_PRIORITY
from governor.directives import OverrideDirective
from governor.escalation import EscalationManager
from governor.exceptions import IssueBusyError
from governor.runner import build_stores
from governor.scheduler import WorkflowGovernor


def _governor(deps, **config):
    config.setdefault("projects", ("Demo",))
    return WorkflowGovernor(GovernorConfig(**config), deps)


class TestScanOnce:
    def test_backlog_issue_dispatched(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1")]})
        results = _governor(deps).scan_once()

        assert len(results) == 1
        result = results[0]
        assert result.project == "Demo"
        assert result.scanned_issues == 1
        assert result.actions_dispatched == 1
        assert result.errors == []
        assert deps.dispatched == [("id-DEMO-1", "trigger-development", "development")]

    def test_active_session_skipped(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1")]})
        deps.active_sessions.add("id-DEMO-1")

        result = _governor(deps).scan_once()[0]

        assert result.actions_dispatched == 0
        assert result.skipped_reasons == {"DEMO-1": "active session in progress"}
        assert deps.dispatched == []

    def test_held_issue_skipped(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1", status="Finished")]})
        deps.held.add("id-DEMO-1")
        result = _governor(deps).scan_once()[0]
        assert result.skipped_reasons["DEMO-1"] == "held by human override"

    def test_one_result_per_project(self, make_deps, make_issue):
        deps = make_deps({
            "Social": [make_issue("SOC-1", project="Social")],
            "Agent": [make_issue("AGT-1", project="Agent"), make_issue("AGT-2", project="Agent")],
        })
        results = _governor(deps, projects=("Social", "Agent")).scan_once()

        assert [r.project for r in results] == ["Social", "Agent"]
        assert [r.actions_dispatched for r in results] == [1, 2]

    def test_empty_project(self, make_deps):
        result = _governor(make_deps()).scan_once()[0]
        assert result.scanned_issues == 0
        assert result.actions_dispatched == 0

    def test_parent_issue_dispatched_as_coordination(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1")]})
        deps.parents.add("id-DEMO-1")
        _governor(deps).scan_once()
        assert deps.dispatched == [("id-DEMO-1", "trigger-development", "coordination")]


class TestDispatchCap:
    def test_cap_per_project(self, make_deps, make_issue):
        issues = [make_issue(f"DEMO-{n}") for n in range(1, 6)]
        deps = make_deps({"Demo": issues})

        result = _governor(deps, max_concurrent_dispatches=2).scan_once()[0]

        assert result.actions_dispatched == 2
        assert [d[0] for d in deps.dispatched] == ["id-DEMO-1", "id-DEMO-2"]
        for identifier in ("DEMO-3", "DEMO-4", "DEMO-5"):
            assert result.skipped_reasons[identifier] == "dispatch limit reached"

    def test_override_priority_goes_first(self, make_deps, make_issue):
        issues = [make_issue(f"DEMO-{n}") for n in range(1, 5)]
        deps = make_deps({"Demo": issues})
        deps.priorities["id-DEMO-4"] = "high"
        deps.priorities["id-DEMO-3"] = "medium"
        deps.priorities["id-DEMO-1"] = "low"

        _governor(deps, max_concurrent_dispatches=3).scan_once()

        assert [d[0] for d in deps.dispatched] == ["id-DEMO-4", "id-DEMO-3", "id-DEMO-1"]

    def test_failed_dispatch_does_not_use_a_slot(self, make_deps, make_issue):
        issues = [make_issue(f"DEMO-{n}") for n in range(1, 4)]
        deps = make_deps({"Demo": issues})
        deps.failing_dispatch.add("id-DEMO-1")

        result = _governor(deps, max_concurrent_dispatches=2).scan_once()[0]

        assert result.actions_dispatched == 2
        assert [e.issue_id for e in result.errors] == ["DEMO-1"]


class TestErrorContainment:
    def test_list_failure_recorded_per_project(self, make_deps, make_issue):
        deps = make_deps({"Agent": [make_issue("AGT-1", project="Agent")]})
        deps.failing_projects.add("Social")

        results = _governor(deps, projects=("Social", "Agent")).scan_once()

        assert results[0].errors[0].issue_id == "project:Social"
        assert "tracker unavailable" in results[0].errors[0].error
        assert results[1].actions_dispatched == 1

    def test_context_failure_recorded_per_issue(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1"), make_issue("DEMO-2")]})
        deps.failing_context.add("id-DEMO-1")

        result = _governor(deps).scan_once()[0]

        assert [e.issue_id for e in result.errors] == ["DEMO-1"]
        assert deps.dispatched == [("id-DEMO-2", "trigger-development", "development")]

    def test_dispatch_failure_recorded(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1")]})
        deps.failing_dispatch.add("id-DEMO-1")

        result = _governor(deps).scan_once()[0]

        assert result.actions_dispatched == 0
        assert "dispatch failed" in result.errors[0].error

    def test_callback_failure_does_not_break_scan(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1")]})
        governor = WorkflowGovernor(
            GovernorConfig(projects=("Demo",)),
            deps,
            on_scan_complete=MagicMock(side_effect=RuntimeError("boom")),
        )
        assert governor.scan_once()[0].actions_dispatched == 1


class TestSingleFlight:
    def test_overlapping_scan_returns_empty(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1")]})
        deps.list_gate = threading.Event()
        governor = _governor(deps)
        first = []

        thread = threading.Thread(target=lambda: first.extend(governor.scan_once()))
        thread.start()
        assert deps.list_entered.wait(5)

        assert governor.is_scanning
        assert governor.scan_once() == []

        deps.list_gate.set()
        thread.join(5)
        assert len(first) == 1
        assert deps.dispatched == [("id-DEMO-1", "trigger-development", "development")]
        assert not governor.is_scanning

    def test_sequential_scans_both_run(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1")]})
        governor = _governor(deps)
        assert len(governor.scan_once()) == 1
        assert len(governor.scan_once()) == 1


class TestLifecycle:
    def test_start_scans_immediately(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1")]})
        scanned = threading.Event()
        governor = WorkflowGovernor(
            GovernorConfig(projects=("Demo",), scan_interval_seconds=3600),
            deps,
            on_scan_complete=lambda results: scanned.set(),
        )

        governor.start()
        try:
            assert scanned.wait(5)
            assert governor.is_running
        finally:
            governor.stop()
            governor.join(5)

        assert not governor.is_running
        assert deps.dispatched == [("id-DEMO-1", "trigger-development", "development")]

    def test_start_is_idempotent(self, make_deps):
        governor = _governor(make_deps(), scan_interval_seconds=3600)
        governor.start()
        try:
            governor.start()
            assert len(governor._threads) == 1
        finally:
            governor.stop()
            governor.join(5)

    def test_stop_when_not_running(self, make_deps):
        governor = _governor(make_deps())
        governor.stop()
        assert not governor.is_running

    def test_restart_after_stop(self, make_deps):
        governor = _governor(make_deps(), scan_interval_seconds=3600)
        governor.start()
        governor.stop()
        governor.join(5)
        governor.start()
        try:
            assert governor.is_running
        finally:
            governor.stop()
            governor.join(5)

    def test_loop_reports_escaped_errors(self, make_deps):
        errors = []
        escaped = threading.Event()

        def on_error(error):
            errors.append(error)
            escaped.set()

        governor = WorkflowGovernor(
            GovernorConfig(projects=("Demo",), scan_interval_seconds=3600),
            make_deps(),
            on_error=on_error,
        )
        governor.scan_once = MagicMock(side_effect=RuntimeError("scan exploded"))

        governor.start()
        try:
            assert escaped.wait(5)
        finally:
            governor.stop()
            governor.join(5)
        assert str(errors[0]) == "scan exploded"


class TestTouchpointTimeouts:
    def test_timeouts_processed_each_scan(self, make_deps):
        escalation = MagicMock()
        governor = WorkflowGovernor(GovernorConfig(projects=("Demo",)), make_deps(), escalation=escalation)

        governor.scan_once()
        governor.scan_once()

        assert escalation.process_timeouts.call_count == 2

    def test_timeout_failure_does_not_stop_scan(self, make_deps, make_issue):
        escalation = MagicMock()
        escalation.process_timeouts.side_effect = RuntimeError("store down")
        on_error = MagicMock()
        deps = make_deps({"Demo": [make_issue("DEMO-1")]})
        governor = WorkflowGovernor(
            GovernorConfig(projects=("Demo",)), deps, escalation=escalation, on_error=on_error,
        )

        assert governor.scan_once()[0].actions_dispatched == 1
        on_error.assert_called_once()


class TestEvaluateAndDispatch:
    def test_dispatches_without_cap(self, make_deps, make_issue):
        deps = make_deps()
        governor = _governor(deps, max_concurrent_dispatches=1)
        governor.evaluate_and_dispatch(make_issue("DEMO-1"))
        decision = governor.evaluate_and_dispatch(make_issue("DEMO-2"))

        assert decision.action == "trigger-development"
        assert len(deps.dispatched) == 2

    def test_non_actionable(self, make_deps, make_issue):
        deps = make_deps()
        deps.active_sessions.add("id-DEMO-1")
        decision = _governor(deps).evaluate_and_dispatch(make_issue("DEMO-1"))
        assert decision.action == "none"
        assert deps.dispatched == []

    def test_gather_context(self, make_deps, make_issue):
        deps = make_deps()
        deps.strategies["id-DEMO-1"] = "decompose"
        deps.priorities["id-DEMO-1"] = "high"
        deps.research_done.add("id-DEMO-1")

        ctx, priority = _governor(deps).gather_context(make_issue("DEMO-1"))

        assert ctx.workflow_strategy == "decompose"
        assert ctx.research_completed
        assert not ctx.has_active_session
        assert priority == "high"



class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestOpenTouchpoints:
    """A pending review request holds refinement back until it times out."""

    def _escalation(self, db, clock):
        stores = build_stores(db)
        return EscalationManager(
            overrides=stores.overrides,
            workflow=stores.workflow,
            touchpoints=stores.touchpoints,
            clock=clock,
        )

    def test_review_request_blocks_until_timeout(self, db, make_deps, make_issue):
        clock = FakeClock()
        escalation = self._escalation(db, clock)
        deps = make_deps({"Demo": [make_issue("DEMO-1", status="Rejected")]})
        deps.strategies["id-DEMO-1"] = "context-enriched"
        escalation.record_failed_cycle("id-DEMO-1", "DEMO-1")
        governor = WorkflowGovernor(GovernorConfig(projects=("Demo",)), deps, escalation=escalation)

        result = governor.scan_once()[0]
        assert result.actions_dispatched == 0
        assert result.skipped_reasons["DEMO-1"] == "awaiting human response to open touchpoint"

        clock.now += 4 * 60 * 60 + 1
        result = governor.scan_once()[0]

        assert result.actions_dispatched == 1
        assert deps.dispatched == [("id-DEMO-1", "trigger-refinement", "refinement")]

    def test_human_reply_releases_issue(self, db, make_deps, make_issue):
        clock = FakeClock()
        escalation = self._escalation(db, clock)
        deps = make_deps({"Demo": [make_issue("DEMO-1", status="Rejected")]})
        deps.strategies["id-DEMO-1"] = "context-enriched"
        escalation.record_failed_cycle("id-DEMO-1", "DEMO-1")
        escalation.apply_directive("id-DEMO-1", OverrideDirective(type="priority", priority="high"))
        governor = WorkflowGovernor(GovernorConfig(projects=("Demo",)), deps, escalation=escalation)

        assert governor.scan_once()[0].actions_dispatched == 1

    def test_timeouts_reported_with_default_action(self, db, make_deps):
        clock = FakeClock()
        escalation = self._escalation(db, clock)
        escalation.record_failed_cycle("id-DEMO-1", "DEMO-1")
        governor = WorkflowGovernor(GovernorConfig(projects=("Demo",)), make_deps(), escalation=escalation)

        assert governor.process_touchpoint_timeouts() == []
        clock.now += 4 * 60 * 60 + 1
        assert governor.process_touchpoint_timeouts() == [("id-DEMO-1", "trigger-refinement")]
        assert governor.process_touchpoint_timeouts() == []


class TestLostDispatchRace:
    def test_busy_issue_recorded_as_skip(self, make_deps, make_issue):
        deps = make_deps({"Demo": [make_issue("DEMO-1"), make_issue("DEMO-2")]})
        dispatch = deps.dispatch_work

        def dispatch_work(issue, action, work_type):
            if issue.id == "id-DEMO-1":
                raise IssueBusyError("DEMO-1 already has an active session", issue_id=issue.id)
            dispatch(issue, action, work_type)

        deps.dispatch_work = dispatch_work
        result = _governor(deps).scan_once()[0]

        assert result.errors == []
        assert result.actions_dispatched == 1
        assert result.skipped_reasons == {"DEMO-1": "active session in progress"}


class TestPriorityOrdering:
    def test_queue_and_scan_agree(self):
        levels = ["low", None, "high", "medium"]
        assert sorted(levels, key=OVERRIDE_PRIORITY_RANK.get) == ["high", "medium", "low", None]
        assert sorted(levels, key=QUEUE_PRIORITY.get) == ["high", "medium", "low", None]
