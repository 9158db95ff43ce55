"""Poll-only workflow governor.

Scans every configured project on an interval, runs each issue through the
decision engine and dispatches up to ``max_concurrent_dispatches`` actions
per project per scan. Only one scan runs at a time per governor: a scan
triggered while another is in flight returns ``[]`` immediately.

Failures are contained. A project whose issues can't be listed is recorded
and skipped; an issue whose context or dispatch fails is recorded and the
scan moves on. Nothing here is fatal to the loop.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from .config import OVERRIDE_PRIORITY_RANK, GovernorConfig, OverridePriority
from .decision import DecisionContext, decide
from .dependencies import GovernorDependencies
from .escalation import EscalationManager
from .exceptions import IssueBusyError
from .models import Action, Decision, Issue, ScanError, ScanResult

logger = logging.getLogger(__name__)


class WorkflowGovernor:
    """Periodic scanner that turns issue state into dispatched work.

    Args:
        config: Governor settings
        deps: External collaborators (issue source, state, dispatch)
        escalation: If given, timed-out touchpoints are auto-proceeded at
            the start of every scan
        on_scan_complete: Called with the results of every completed scan
        on_error: Called with any exception that escaped a scan
    """

    def __init__(
        self,
        config: GovernorConfig,
        deps: GovernorDependencies,
        escalation: EscalationManager | None = None,
        on_scan_complete: Callable[[list[ScanResult]], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        self.config = config
        self.deps = deps
        self.escalation = escalation
        self.on_scan_complete = on_scan_complete
        self.on_error = on_error

        self._running = False
        self._state_lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_scanning(self) -> bool:
        return self._scan_lock.locked()

    def start(self) -> None:
        """Scan now, then every ``scan_interval_seconds`` on a background thread.

        A stopped governor can be started again; threads left over from the
        previous run are joined first.
        """
        with self._state_lock:
            if self._running:
                logger.warning("Governor is already running")
                return
            for thread in self._threads:
                thread.join()
            self._running = True
            self._stop_event.clear()
            self._threads = []
            self._start_threads()

        logger.info(
            "Governor started (projects=%s interval=%ss max_dispatches=%d)",
            list(self.config.projects),
            self.config.scan_interval_seconds,
            self.config.max_concurrent_dispatches,
        )

    def _start_threads(self) -> None:
        self._spawn(self._run_loop, "governor-scan")

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def stop(self) -> None:
        """Stop scheduling new scans. A scan in progress runs to completion."""
        with self._state_lock:
            if not self._running:
                logger.warning("Governor is not running")
                return
            self._running = False
            self._stop_event.set()
        logger.info("Governor stopped")

    def join(self, timeout: float | None = None) -> None:
        """Wait for the background threads to exit after ``stop()``."""
        for thread in self._threads:
            thread.join(timeout)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.scan_once()
            except Exception as e:
                logger.exception("Scan failed")
                self._report_error(e)
            self._stop_event.wait(self.config.scan_interval_seconds)

    def _report_error(self, error: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            logger.exception("on_error callback failed")

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def scan_once(self) -> list[ScanResult]:
        """Run one pass over every configured project.

        Returns:
            One ScanResult per project, or [] if another scan was in flight
        """
        if not self._scan_lock.acquire(blocking=False):
            logger.debug("Scan already in progress, skipping")
            return []

        try:
            self.process_touchpoint_timeouts()
            results = [self._scan_project(project) for project in self.config.projects]
        finally:
            self._scan_lock.release()

        if self.on_scan_complete is not None:
            try:
                self.on_scan_complete(results)
            except Exception:
                logger.exception("on_scan_complete callback failed")

        return results

    def _scan_project(self, project: str) -> ScanResult:
        result = ScanResult(project=project)

        try:
            issues = self.deps.list_issues(project)
        except Exception as e:
            logger.error("Failed to list issues for project %s: %s", project, e)
            result.errors.append(ScanError(issue_id=f"project:{project}", error=str(e)))
            return result

        result.scanned_issues = len(issues)
        logger.info("Scanning project %s (%d issues)", project, len(issues))

        actionable: list[tuple[Issue, Decision, OverridePriority | None]] = []
        for issue in issues:
            try:
                decision, priority = self.evaluate_issue(issue)
            except Exception as e:
                logger.error("Error evaluating %s: %s", issue.identifier, e)
                result.errors.append(ScanError(issue_id=issue.identifier, error=str(e)))
                continue

            if not decision.is_actionable:
                result.skipped_reasons[issue.identifier] = decision.reason
                continue
            actionable.append((issue, decision, priority))

        # Stable: issues with the same priority keep their listing order
        actionable.sort(key=lambda item: OVERRIDE_PRIORITY_RANK.get(item[2], 3))

        for issue, decision, priority in actionable:
            if result.actions_dispatched >= self.config.max_concurrent_dispatches:
                result.skipped_reasons[issue.identifier] = "dispatch limit reached"
                continue

            try:
                self.dispatch(issue, decision)
            except IssueBusyError:
                # Another governor sharing the store got there first
                logger.info("Skipping %s: dispatched elsewhere since evaluation", issue.identifier)
                result.skipped_reasons[issue.identifier] = "active session in progress"
                continue
            except Exception as e:
                logger.error("Error dispatching %s: %s", issue.identifier, e)
                result.errors.append(ScanError(issue_id=issue.identifier, error=str(e)))
                continue

            result.actions_dispatched += 1
            logger.info(
                "Dispatched %s for %s (%s, priority=%s)",
                decision.action, issue.identifier, decision.reason, priority or "none",
            )

        logger.info(
            "Project scan complete: %s scanned=%d dispatched=%d skipped=%d errors=%d",
            project,
            result.scanned_issues,
            result.actions_dispatched,
            len(result.skipped_reasons),
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Per-issue evaluation, shared with the event-driven governor
    # ------------------------------------------------------------------

    def gather_context(self, issue: Issue) -> tuple[DecisionContext, OverridePriority | None]:
        """Fetch everything the decision needs, with the reads run concurrently."""
        deps = self.deps
        with ThreadPoolExecutor(max_workers=8, thread_name_prefix="governor-ctx") as pool:
            has_active_session = pool.submit(deps.has_active_session, issue.id)
            is_within_cooldown = pool.submit(deps.is_within_cooldown, issue.id)
            is_parent_issue = pool.submit(deps.is_parent_issue, issue.id)
            is_held = pool.submit(deps.is_held, issue.id)
            workflow_strategy = pool.submit(deps.get_workflow_strategy, issue.id)
            research_completed = pool.submit(deps.is_research_completed, issue.id)
            backlog_completed = pool.submit(deps.is_backlog_creation_completed, issue.id)
            priority = pool.submit(deps.get_override_priority, issue.id)
            awaiting_response = (
                pool.submit(self.escalation.is_awaiting_response, issue.id)
                if self.escalation is not None else None
            )

            ctx = DecisionContext(
                has_active_session=has_active_session.result(),
                is_held=is_held.result(),
                is_within_cooldown=is_within_cooldown.result(),
                is_parent_issue=is_parent_issue.result(),
                workflow_strategy=workflow_strategy.result(),
                research_completed=research_completed.result(),
                backlog_creation_completed=backlog_completed.result(),
                awaiting_human_response=bool(awaiting_response and awaiting_response.result()),
                now=time.time(),
            )
            return ctx, priority.result()

    def evaluate_issue(self, issue: Issue) -> tuple[Decision, OverridePriority | None]:
        """Gather context for an issue and run it through the decision engine."""
        ctx, priority = self.gather_context(issue)
        return decide(issue, self.config, ctx), priority

    def dispatch(self, issue: Issue, decision: Decision) -> None:
        """Hand an actionable decision to the dispatch collaborator."""
        self.deps.dispatch_work(issue, decision.action, decision.work_type)

    def evaluate_and_dispatch(self, issue: Issue) -> Decision:
        """Evaluate one issue and dispatch it if actionable. No dispatch cap applies."""
        decision, _ = self.evaluate_issue(issue)
        if not decision.is_actionable:
            logger.debug("No action for %s: %s", issue.identifier, decision.reason)
            return decision

        logger.info("Dispatching %s for %s (%s)", decision.action, issue.identifier, decision.reason)
        try:
            self.dispatch(issue, decision)
        except IssueBusyError:
            logger.info("Skipping %s: dispatched elsewhere since evaluation", issue.identifier)
            return Decision(action="none", reason="active session in progress")
        return decision

    def process_touchpoint_timeouts(self) -> list[tuple[str, Action]]:
        """Auto-proceed touchpoints nobody answered in time.

        An auto-proceeded touchpoint stops holding its issue back, so the
        scan that follows dispatches the strategy's default action.

        Returns:
            (issue_id, default action) for each touchpoint that timed out
        """
        if self.escalation is None:
            return []
        try:
            proceeded = self.escalation.process_timeouts()
        except Exception as e:
            logger.error("Failed to process touchpoint timeouts: %s", e)
            self._report_error(e)
            return []

        results = []
        for notification, action in proceeded:
            logger.info(
                "Auto-proceeding %s for %s after %s timed out",
                action, notification.issue_id, notification.type,
            )
            results.append((notification.issue_id, action))
        return results
