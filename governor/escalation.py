"""Escalation state machine for issues that keep failing QA.

Each failed dev -> QA round-trip bumps the issue's cycle count, and the
strategy follows from the count alone:

    cycle 0     normal
    cycle 1-2   context-enriched   (review request, 4h)
    cycle 3     decompose          (decomposition proposal, 2h)
    cycle 4+    escalate-human     (escalation alert, waits for RESUME)

While a review request or decomposition proposal is open, the governor
holds back refinement and decomposition for the issue. A touchpoint left
unanswered past its timeout auto-proceeds with the strategy's default
action.
"""

import dataclasses
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from .config import TouchpointConfig, WorkflowStrategy
from .db import Database
from .directives import OverrideDirective
from .models import Action
from .touchpoints import (
    OverrideStore,
    TouchpointNotification,
    TouchpointStore,
    generate_decomposition_proposal,
    generate_escalation_alert,
    generate_review_request,
    has_touchpoint_timed_out,
)

logger = logging.getLogger(__name__)

# Action taken when a touchpoint times out without a human reply
AUTO_PROCEED_ACTIONS: dict[str, Action] = {
    "review-request": "trigger-refinement",
    "decomposition-proposal": "decompose",
}

# Separator between failure summaries from successive cycles
SUMMARY_SEPARATOR = "\n\n---\n\n"


def compute_strategy(cycle_count: int) -> WorkflowStrategy:
    """Map a failed-cycle count to the escalation strategy."""
    if cycle_count <= 0:
        return "normal"
    if cycle_count <= 2:
        return "context-enriched"
    if cycle_count == 3:
        return "decompose"
    return "escalate-human"


@dataclass
class WorkflowState:
    issue_id: str
    cycle_count: int = 0
    strategy: WorkflowStrategy = "normal"
    failure_summary: str | None = None
    qa_failed_at: float | None = None
    updated_at: float = 0.0


class WorkflowStateStore:
    """Per-issue cycle tracking in the shared store."""

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock

    def get(self, issue_id: str) -> WorkflowState | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_state WHERE issue_id = ?", (issue_id,)
            ).fetchone()
        if not row:
            return None
        return WorkflowState(**{key: row[key] for key in row.keys()})

    def _save(self, state: WorkflowState) -> WorkflowState:
        state.updated_at = self.clock()
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO workflow_state (
                    issue_id, cycle_count, strategy, failure_summary, qa_failed_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    state.issue_id, state.cycle_count, state.strategy,
                    state.failure_summary, state.qa_failed_at, state.updated_at,
                ),
            )
        return state

    def increment_cycle(self, issue_id: str) -> WorkflowState:
        """Record one more failed cycle and recompute the strategy."""
        state = self.get(issue_id) or WorkflowState(issue_id=issue_id)
        state.cycle_count += 1
        state.strategy = compute_strategy(state.cycle_count)
        logger.info(
            "%s failed cycle %d, strategy now %s", issue_id, state.cycle_count, state.strategy
        )
        return self._save(state)

    def append_failure_summary(self, issue_id: str, summary: str) -> WorkflowState:
        state = self.get(issue_id) or WorkflowState(issue_id=issue_id)
        if state.failure_summary:
            state.failure_summary = f"{state.failure_summary}{SUMMARY_SEPARATOR}{summary}"
        else:
            state.failure_summary = summary
        return self._save(state)

    def set_strategy(self, issue_id: str, strategy: WorkflowStrategy) -> WorkflowState:
        state = self.get(issue_id) or WorkflowState(issue_id=issue_id)
        state.strategy = strategy
        return self._save(state)

    def get_strategy(self, issue_id: str) -> WorkflowStrategy | None:
        state = self.get(issue_id)
        return state.strategy if state else None

    def clear(self, issue_id: str) -> None:
        with self.db.connection() as conn:
            conn.execute("DELETE FROM workflow_state WHERE issue_id = ?", (issue_id,))
        logger.info("Reset workflow state for %s", issue_id)

    def mark_qa_failed(self, issue_id: str) -> None:
        state = self.get(issue_id) or WorkflowState(issue_id=issue_id)
        state.qa_failed_at = self.clock()
        self._save(state)

    def clear_qa_failed(self, issue_id: str) -> None:
        state = self.get(issue_id)
        if state and state.qa_failed_at is not None:
            state.qa_failed_at = None
            self._save(state)

    def did_just_fail_qa(self, issue_id: str, cooldown_seconds: float) -> bool:
        """True while the issue is inside its post-QA-failure cooldown."""
        state = self.get(issue_id)
        if not state or state.qa_failed_at is None:
            return False
        return self.clock() - state.qa_failed_at < cooldown_seconds


class EscalationManager:
    """Drives the escalation state machine and its human touchpoints.

    Args:
        overrides: Override state for directives
        workflow: Cycle tracking
        touchpoints: Record of posted notifications
        config: Touchpoint timeouts
        post_comment: Optional callable (issue_id, body) that publishes a
            notification to the tracker
        clock: Returns the current time (injectable for tests)
    """

    def __init__(
        self,
        overrides: OverrideStore,
        workflow: WorkflowStateStore,
        touchpoints: TouchpointStore,
        config: TouchpointConfig | None = None,
        post_comment: Callable[[str, str], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.overrides = overrides
        self.workflow = workflow
        self.touchpoints = touchpoints
        self.config = config or TouchpointConfig()
        self.post_comment = post_comment
        self.clock = clock

    def record_failed_cycle(
        self,
        issue_id: str,
        issue_identifier: str,
        failure_summary: str | None = None,
        total_cost_usd: float | None = None,
    ) -> TouchpointNotification | None:
        """Advance the issue one failed cycle and post the matching touchpoint.

        Returns:
            The posted notification, or None while the strategy is still normal
        """
        self.workflow.mark_qa_failed(issue_id)
        if failure_summary:
            self.workflow.append_failure_summary(issue_id, failure_summary)
        state = self.workflow.increment_cycle(issue_id)
        now = self.clock()

        if state.strategy == "context-enriched":
            notification = generate_review_request(
                issue_identifier, state.cycle_count, state.failure_summary, state.strategy,
                total_cost_usd=total_cost_usd, config=self.config, now=now,
            )
        elif state.strategy == "decompose":
            notification = generate_decomposition_proposal(
                issue_identifier, state.cycle_count, state.failure_summary,
                total_cost_usd=total_cost_usd, config=self.config, now=now,
            )
        elif state.strategy == "escalate-human":
            notification = generate_escalation_alert(
                issue_identifier, state.cycle_count, state.failure_summary,
                total_cost_usd=total_cost_usd, config=self.config, now=now,
            )
            # Park the issue until a human replies
            self.overrides.set(
                issue_id,
                OverrideDirective(type="hold", reason="escalated to human", timestamp=now),
            )
        else:
            return None

        notification = dataclasses.replace(notification, issue_id=issue_id)
        self.touchpoints.save(issue_id, notification)
        if self.post_comment:
            self.post_comment(issue_id, notification.body)
        logger.info("Posted %s for %s (cycle %d)", notification.type, issue_identifier, state.cycle_count)
        return notification

    def record_success(self, issue_id: str) -> None:
        """The issue passed QA: drop its cooldown marker."""
        self.workflow.clear_qa_failed(issue_id)

    def apply_directive(self, issue_id: str, directive: OverrideDirective) -> None:
        """Apply a human directive parsed from a comment.

        RESUME clears the override and resets cycle tracking. DECOMPOSE also
        forces the decompose strategy. Every directive counts as a response
        to the issue's open touchpoints.
        """
        self.touchpoints.mark_responded(issue_id, self.clock())

        if directive.type == "resume":
            self.overrides.clear(issue_id)
            self.workflow.clear(issue_id)
            return

        self.overrides.set(issue_id, directive)
        if directive.type == "decompose":
            self.workflow.set_strategy(issue_id, "decompose")

    def is_awaiting_response(self, issue_id: str, now: float | None = None) -> bool:
        """True while a finite touchpoint on the issue is open and inside its window.

        Escalation alerts never time out and are not counted here: the hold
        they place on the issue already keeps it parked.
        """
        now = self.clock() if now is None else now
        for _, notification in self.touchpoints.pending(issue_id):
            if not math.isfinite(notification.timeout_seconds):
                continue
            if not has_touchpoint_timed_out(notification, now):
                return True
        return False

    def process_timeouts(self, now: float | None = None) -> list[tuple[TouchpointNotification, Action]]:
        """Auto-proceed every touchpoint whose response window has passed.

        Returns:
            (notification, default action) for each touchpoint that timed out
        """
        now = self.clock() if now is None else now
        proceeded = []
        for issue_id, notification in self.touchpoints.pending():
            if not has_touchpoint_timed_out(notification, now):
                continue
            action = AUTO_PROCEED_ACTIONS.get(notification.type)
            if action is None:
                continue
            self.touchpoints.mark_auto_proceeded(notification.id, now)
            if action == "decompose":
                self.workflow.set_strategy(issue_id, "decompose")
            logger.info(
                "%s for %s timed out, auto-proceeding with %s", notification.type, issue_id, action
            )
            proceeded.append((notification, action))
        return proceeded
