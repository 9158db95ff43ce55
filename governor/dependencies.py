"""Collaborators the governor calls out to.

``GovernorDependencies`` is the whole surface the governor needs from the
outside world. ``StoreDependencies`` implements it on top of the shared
SQLite store plus an injected issue source; tests swap in a fake.
"""

import logging
import sqlite3
import time
import uuid
from typing import Callable, Protocol

from .config import OVERRIDE_PRIORITY_RANK, GovernorConfig, OverridePriority
from .escalation import WorkflowStateStore
from .exceptions import DispatchError, IssueBusyError
from .models import Action, Issue, QueuedWork
from .processing_state import ProcessingStateStore
from .sessions import SessionStore
from .touchpoints import OverrideStore
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


class GovernorDependencies(Protocol):
    def list_issues(self, project: str) -> list[Issue]: ...

    def has_active_session(self, issue_id: str) -> bool: ...

    def is_within_cooldown(self, issue_id: str) -> bool: ...

    def is_parent_issue(self, issue_id: str) -> bool: ...

    def is_held(self, issue_id: str) -> bool: ...

    def get_override_priority(self, issue_id: str) -> OverridePriority | None: ...

    def get_workflow_strategy(self, issue_id: str) -> str | None: ...

    def is_research_completed(self, issue_id: str) -> bool: ...

    def is_backlog_creation_completed(self, issue_id: str) -> bool: ...

    def dispatch_work(self, issue: Issue, action: Action, work_type: str) -> None:
        """Hand work for the issue to the queue. Raises on failure."""
        ...


# Queue priority for each override level (lower is claimed sooner). Same
# order as a scan's dispatches: high, medium, low, then no override.
QUEUE_PRIORITY = OVERRIDE_PRIORITY_RANK


def default_session_id() -> str:
    return str(uuid.uuid4())


class StoreDependencies:
    """Governor collaborators backed by the shared store.

    Args:
        config: Governor settings (cooldown length)
        queue: Work queue that dispatched work lands in
        sessions: Session records
        overrides: Human override state
        workflow: Escalation tracking
        processing: Completed top-of-funnel phases
        issue_lister: Callable returning the non-terminal issues of a project
        parent_checker: Callable telling whether an issue has sub-issues
        prompt_builder: Optional callable (issue, work_type) -> prompt text
        session_id_factory: Produces new session ids
    """

    def __init__(
        self,
        config: GovernorConfig,
        queue: WorkQueue,
        sessions: SessionStore,
        overrides: OverrideStore,
        workflow: WorkflowStateStore,
        processing: ProcessingStateStore,
        issue_lister: Callable[[str], list[Issue]],
        parent_checker: Callable[[str], bool] | None = None,
        prompt_builder: Callable[[Issue, str], str | None] | None = None,
        session_id_factory: Callable[[], str] = default_session_id,
    ):
        self.config = config
        self.queue = queue
        self.sessions = sessions
        self.overrides = overrides
        self.workflow = workflow
        self.processing = processing
        self.issue_lister = issue_lister
        self.parent_checker = parent_checker
        self.prompt_builder = prompt_builder
        self.session_id_factory = session_id_factory

    def list_issues(self, project: str) -> list[Issue]:
        return self.issue_lister(project)

    def has_active_session(self, issue_id: str) -> bool:
        return self.sessions.has_active_session(issue_id)

    def is_within_cooldown(self, issue_id: str) -> bool:
        return self.workflow.did_just_fail_qa(issue_id, self.config.qa_cooldown_seconds)

    def is_parent_issue(self, issue_id: str) -> bool:
        if self.parent_checker is None:
            return False
        return self.parent_checker(issue_id)

    def is_held(self, issue_id: str) -> bool:
        # A reassigned issue belongs to a human until RESUME
        return self.overrides.is_held(issue_id) or self.overrides.has_directive(issue_id, "reassign")

    def get_override_priority(self, issue_id: str) -> OverridePriority | None:
        return self.overrides.get_override_priority(issue_id)

    def get_workflow_strategy(self, issue_id: str) -> str | None:
        return self.workflow.get_strategy(issue_id)

    def is_research_completed(self, issue_id: str) -> bool:
        return self.processing.is_completed(issue_id, "research")

    def is_backlog_creation_completed(self, issue_id: str) -> bool:
        return self.processing.is_completed(issue_id, "backlog-creation")

    def dispatch_work(self, issue: Issue, action: Action, work_type: str) -> None:
        """Register a pending session, then queue the work.

        The session record is written first so that ``has_active_session``
        already reports the issue as busy while the work waits in the queue.
        Writing it re-checks for an active session under the store's write
        lock, so governors sharing a store never queue the same issue twice.

        Raises:
            IssueBusyError: if the issue gained an active session since it
                was evaluated
            DispatchError: if the work could not be queued
        """
        session_id = self.session_id_factory()
        priority = QUEUE_PRIORITY.get(self.get_override_priority(issue.id), QUEUE_PRIORITY[None])
        queued_at = time.time()
        prompt = self.prompt_builder(issue, work_type) if self.prompt_builder else None

        try:
            record = self.sessions.create_if_idle(
                session_id=session_id,
                issue_id=issue.id,
                issue_identifier=issue.identifier,
                work_type=work_type,
                project_name=issue.project,
                priority=priority,
                queued_at=queued_at,
            )
        except sqlite3.Error as e:
            raise DispatchError(
                f"Failed to register session for {issue.identifier}: {e}", issue_id=issue.id
            ) from e
        if record is None:
            raise IssueBusyError(
                f"{issue.identifier} already has an active session", issue_id=issue.id
            )

        work = QueuedWork(
            session_id=session_id,
            issue_id=issue.id,
            issue_identifier=issue.identifier,
            priority=priority,
            queued_at=queued_at,
            work_type=work_type,
            project_name=issue.project,
            prompt=prompt,
        )
        try:
            queued = self.queue.enqueue(work)
        except sqlite3.Error as e:
            self.sessions.update_status(session_id, "failed", error=str(e))
            raise DispatchError(
                f"Failed to queue {work_type} work for {issue.identifier}: {e}", issue_id=issue.id
            ) from e
        if not queued:
            self.sessions.update_status(session_id, "failed", error="enqueue failed")
            raise DispatchError(
                f"Failed to queue {work_type} work for {issue.identifier}", issue_id=issue.id
            )

        logger.info(
            "Dispatched %s (%s) for %s as session %s", action, work_type, issue.identifier, session_id
        )
