"""Decision engine: what should the governor do with one issue?

``decide`` is a pure function of the issue, the config and a context of
facts gathered beforehand by the governor. It performs no I/O, never raises
for any input, and always explains a ``none`` with a reason.
"""

from dataclasses import dataclass

from .config import GovernorConfig
from .models import ACTION_WORK_TYPES, Action, Decision, Issue
from .top_of_funnel import (
    icebox_age_seconds,
    is_research_due,
    is_well_researched,
    needs_research,
    research_request_labels,
)


@dataclass(frozen=True)
class DecisionContext:
    """Everything about an issue that the decision depends on.

    ``awaiting_human_response`` is set while a review request or
    decomposition proposal is open and inside its response window.
    ``now`` is the clock reading the Icebox research delay is measured
    against; without it the delay is not applied.
    """
    has_active_session: bool = False
    is_held: bool = False
    is_within_cooldown: bool = False
    is_parent_issue: bool = False
    workflow_strategy: str | None = None
    research_completed: bool = False
    backlog_creation_completed: bool = False
    awaiting_human_response: bool = False
    now: float | None = None


def _dispatch(action: Action, reason: str, work_type: str | None = None) -> Decision:
    return Decision(action=action, reason=reason, work_type=work_type or ACTION_WORK_TYPES[action])


def _skip(reason: str) -> Decision:
    return Decision(action="none", reason=reason)


AWAITING_RESPONSE_REASON = "awaiting human response to open touchpoint"


def decide(issue: Issue, config: GovernorConfig, ctx: DecisionContext) -> Decision:
    """Pick the action for an issue. First matching rule wins."""
    # Guards, in order of precedence
    if ctx.is_held:
        return _skip("held by human override")
    if ctx.has_active_session:
        return _skip("active session in progress")
    if ctx.is_within_cooldown:
        return _skip("cooldown after recent QA failure")

    statuses = config.statuses
    status = issue.status

    if statuses.is_terminal(status):
        return _skip(f"terminal status: {status}")

    if status == statuses.started:
        return _skip("agent already working (started)")

    if status == statuses.icebox:
        return _decide_icebox(issue, config, ctx)

    if status == statuses.backlog:
        # The coordinator of the parent issue owns its sub-issues
        if issue.parent_id is not None:
            return _skip("sub-issue, only parent issues are dispatched directly")
        if not config.enable_auto_development:
            return _skip("auto-development is disabled")
        if ctx.is_parent_issue:
            return _dispatch(
                "trigger-development",
                "parent issue in backlog, triggering coordination",
                work_type="coordination",
            )
        return _dispatch("trigger-development", "issue in backlog, triggering development")

    if status == statuses.finished:
        if not config.enable_auto_qa:
            return _skip("auto-QA is disabled")
        if ctx.workflow_strategy == "escalate-human":
            return _dispatch("escalate-human", "finished with escalate-human strategy, needs a human")
        if ctx.workflow_strategy == "decompose":
            if ctx.awaiting_human_response:
                return _skip(AWAITING_RESPONSE_REASON)
            return _dispatch("decompose", "finished with decompose strategy, triggering decomposition")
        return _dispatch("trigger-qa", "issue finished, triggering QA")

    if status == statuses.delivered:
        if not config.enable_auto_acceptance:
            return _skip("auto-acceptance is disabled")
        return _dispatch("trigger-acceptance", "issue delivered, triggering acceptance")

    if status == statuses.rejected:
        return _decide_rejected(ctx)

    return _skip("no applicable transition for status")


def _decide_icebox(issue: Issue, config: GovernorConfig, ctx: DecisionContext) -> Decision:
    funnel = config.top_of_funnel

    if ctx.is_parent_issue:
        return _skip("parent issues are handled by the coordination workflow")
    if issue.parent_id is not None:
        return _skip("sub-issue, researched through its parent")

    well_researched = is_well_researched(issue.description, funnel)

    if not ctx.research_completed:
        if config.enable_auto_research and needs_research(issue, funnel):
            if not is_research_due(issue, funnel, ctx.now):
                return _skip(
                    "needs research but has not been in icebox long enough "
                    f"({icebox_age_seconds(issue, ctx.now):.0f}s < "
                    f"{funnel.icebox_research_delay_seconds:.0f}s)"
                )
            labels = research_request_labels(issue, funnel)
            if labels:
                return _dispatch("trigger-research", f"research requested by label: {', '.join(labels)}")
            return _dispatch("trigger-research", "icebox issue needs research")
        if not well_researched:
            return _skip("auto-research is disabled and the issue is not well researched")

    if ctx.backlog_creation_completed:
        if ctx.research_completed:
            return _skip("research and backlog creation already completed")
        return _skip("backlog creation already completed")
    if not config.enable_auto_backlog_creation:
        return _skip("auto-backlog-creation is disabled")
    if ctx.research_completed:
        return _dispatch("trigger-backlog-creation", "research complete, creating backlog issues")
    return _dispatch("trigger-backlog-creation", "issue is well researched, creating backlog issues")


def _decide_rejected(ctx: DecisionContext) -> Decision:
    if ctx.workflow_strategy == "escalate-human":
        return _dispatch("escalate-human", "rejected with escalate-human strategy, needs a human")
    if ctx.awaiting_human_response:
        return _skip(AWAITING_RESPONSE_REASON)
    if ctx.workflow_strategy == "decompose":
        return _dispatch("decompose", "rejected with decompose strategy, triggering decomposition")
    return _dispatch("trigger-refinement", "rejected, triggering refinement")
