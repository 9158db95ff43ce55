"""Human override state and touchpoint notifications.

Override state is kept behind a small storage interface so the governor can
run against the shared SQLite store in production and a dict in tests. The
storage is always passed in explicitly.

Expiry is lazy: ``OverrideStore.get`` clears an expired entry as a side effect
and reports "no override". There is no background sweeper.
"""

import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Literal, Protocol

from .config import OverridePriority, TouchpointConfig
from .db import Database
from .directives import OverrideDirective

logger = logging.getLogger(__name__)


TouchpointType = Literal["review-request", "decomposition-proposal", "escalation-alert"]


@dataclass
class OverrideState:
    issue_id: str
    directive: OverrideDirective
    is_active: bool = True
    expires_at: float | None = None


# =============================================================================
# Storage adapters
# =============================================================================


class OverrideStorage(Protocol):
    def get(self, issue_id: str) -> OverrideState | None: ...

    def set(self, issue_id: str, state: OverrideState) -> None: ...

    def clear(self, issue_id: str) -> None: ...


class InMemoryOverrideStorage:
    """Override storage for tests and single-process runs."""

    def __init__(self):
        self._store: dict[str, OverrideState] = {}

    def get(self, issue_id: str) -> OverrideState | None:
        return self._store.get(issue_id)

    def set(self, issue_id: str, state: OverrideState) -> None:
        self._store[issue_id] = state

    def clear(self, issue_id: str) -> None:
        self._store.pop(issue_id, None)


class SqliteOverrideStorage:
    """Override storage in the shared ``overrides`` table."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, issue_id: str) -> OverrideState | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM overrides WHERE issue_id = ?", (issue_id,)
            ).fetchone()
        if not row:
            return None
        return OverrideState(
            issue_id=row["issue_id"],
            directive=OverrideDirective.from_dict(json.loads(row["directive"])),
            is_active=bool(row["is_active"]),
            expires_at=row["expires_at"],
        )

    def set(self, issue_id: str, state: OverrideState) -> None:
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO overrides (issue_id, directive, is_active, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    issue_id,
                    json.dumps(state.directive.to_dict()),
                    state.is_active,
                    time.time(),
                    state.expires_at,
                ),
            )

    def clear(self, issue_id: str) -> None:
        with self.db.connection() as conn:
            conn.execute("DELETE FROM overrides WHERE issue_id = ?", (issue_id,))


# =============================================================================
# Override state
# =============================================================================


class OverrideStore:
    """Per-issue human directives on top of a storage adapter.

    Args:
        storage: Where override state lives
        clock: Returns the current time (injectable for tests)
    """

    def __init__(self, storage: OverrideStorage, clock=time.time):
        self.storage = storage
        self.clock = clock

    def get(self, issue_id: str) -> OverrideState | None:
        """Current override for an issue. Expired entries are cleared and ignored."""
        state = self.storage.get(issue_id)
        if state and state.expires_at is not None and self.clock() > state.expires_at:
            logger.info("Override expired for %s (%s)", issue_id, state.directive.type)
            self.storage.clear(issue_id)
            return None
        return state

    def set(
        self,
        issue_id: str,
        directive: OverrideDirective,
        ttl_seconds: float | None = None,
    ) -> OverrideState:
        expires_at = self.clock() + ttl_seconds if ttl_seconds is not None else None
        state = OverrideState(issue_id=issue_id, directive=directive, expires_at=expires_at)
        self.storage.set(issue_id, state)
        logger.info("Override set for %s: %s", issue_id, directive.type)
        return state

    def clear(self, issue_id: str) -> None:
        self.storage.clear(issue_id)
        logger.info("Override cleared for %s", issue_id)

    def is_held(self, issue_id: str) -> bool:
        state = self.get(issue_id)
        return state is not None and state.is_active and state.directive.type == "hold"

    def get_override_priority(self, issue_id: str) -> OverridePriority | None:
        state = self.get(issue_id)
        if state and state.is_active and state.directive.type == "priority":
            return state.directive.priority
        return None

    def has_directive(self, issue_id: str, directive_type: str) -> bool:
        state = self.get(issue_id)
        return state is not None and state.is_active and state.directive.type == directive_type


# =============================================================================
# Notifications
# =============================================================================


@dataclass
class TouchpointNotification:
    """A comment posted to ask a human for input.

    ``timeout_seconds`` of ``math.inf`` never auto-proceeds.
    """
    type: TouchpointType
    issue_id: str
    body: str
    posted_at: float
    timeout_seconds: float
    responded_at: float | None = None
    id: int | None = None


def _format_cost(total_cost_usd: float | None) -> str:
    if total_cost_usd is None:
        return ""
    return f"\n- **Total cost so far:** ${total_cost_usd:.2f}"


def _hours(seconds: float) -> int:
    return round(seconds / (60 * 60))


def _summary(failure_summary: str | None) -> str:
    return failure_summary or "_No failure details available._"


def generate_review_request(
    issue_identifier: str,
    cycle_count: int,
    failure_summary: str | None,
    strategy: str,
    total_cost_usd: float | None = None,
    config: TouchpointConfig | None = None,
    now: float | None = None,
) -> TouchpointNotification:
    """Review request, posted once the context-enriched strategy kicks in."""
    config = config or TouchpointConfig()
    body = f"""## Review Request

**{issue_identifier}** has failed **{cycle_count}** dev-QA cycle(s).

- **Current strategy:** {strategy}{_format_cost(total_cost_usd)}

### Failure Summary

{_summary(failure_summary)}

### Actions

Reply with one of the following directives:
- **HOLD** - Pause autonomous processing
- **SKIP QA** - Skip QA and proceed to acceptance
- **DECOMPOSE** - Trigger task decomposition
- **REASSIGN** - Stop agent work, assign to a human
- **PRIORITY: high|medium|low** - Adjust scheduling priority
- **RESUME** - Continue with current strategy

_This request will auto-proceed in {_hours(config.review_request_timeout_seconds)} hour(s) if no response is received._"""

    return TouchpointNotification(
        type="review-request",
        issue_id=issue_identifier,
        body=body,
        posted_at=time.time() if now is None else now,
        timeout_seconds=config.review_request_timeout_seconds,
    )


def generate_decomposition_proposal(
    issue_identifier: str,
    cycle_count: int,
    failure_summary: str | None,
    total_cost_usd: float | None = None,
    config: TouchpointConfig | None = None,
    now: float | None = None,
) -> TouchpointNotification:
    """Decomposition proposal, posted when the decompose strategy kicks in."""
    config = config or TouchpointConfig()
    cost_line = f"- {_format_cost(total_cost_usd).strip()}\n\n" if total_cost_usd is not None else ""
    body = f"""## Decomposition Proposal

**{issue_identifier}** has failed **{cycle_count}** dev-QA cycle(s) and is being considered for decomposition into smaller sub-issues.

{cost_line}### Failure Summary

{_summary(failure_summary)}

### Recommended Action

The agent will attempt to decompose this issue into smaller, independently solvable sub-issues.

Reply with a directive to override:
- **HOLD** - Pause and review manually
- **SKIP QA** - Skip QA and proceed to acceptance
- **REASSIGN** - Stop agent work entirely
- **PRIORITY: high|medium|low** - Adjust scheduling priority
- **RESUME** - Proceed with decomposition (default)

_Decomposition will auto-proceed in {_hours(config.decomposition_proposal_timeout_seconds)} hour(s) if no response is received._"""

    return TouchpointNotification(
        type="decomposition-proposal",
        issue_id=issue_identifier,
        body=body,
        posted_at=time.time() if now is None else now,
        timeout_seconds=config.decomposition_proposal_timeout_seconds,
    )


def generate_escalation_alert(
    issue_identifier: str,
    cycle_count: int,
    failure_summary: str | None,
    total_cost_usd: float | None = None,
    blocker_identifier: str | None = None,
    config: TouchpointConfig | None = None,
    now: float | None = None,
) -> TouchpointNotification:
    """Escalation alert. Waits for a human indefinitely."""
    config = config or TouchpointConfig()
    blocker_line = f"\n- **Blocker issue:** {blocker_identifier}" if blocker_identifier else ""
    body = f"""## Escalation Alert

**{issue_identifier}** has failed **{cycle_count}** dev-QA cycle(s) and requires human intervention.

- **Strategy:** escalate-human{blocker_line}{_format_cost(total_cost_usd)}

### Failure Summary

{_summary(failure_summary)}

### Required Action

This issue has exhausted automated resolution strategies. A human must review and take action:
- **HOLD** - Keep paused (current state)
- **DECOMPOSE** - Request agent decomposition
- **REASSIGN** - Assign to a specific person
- **PRIORITY: high|medium|low** - Adjust scheduling priority
- **RESUME** - Retry with normal strategy (resets cycle count)

_This issue will remain paused until a human responds._"""

    return TouchpointNotification(
        type="escalation-alert",
        issue_id=issue_identifier,
        body=body,
        posted_at=time.time() if now is None else now,
        timeout_seconds=config.escalation_alert_timeout_seconds,
    )


def has_touchpoint_timed_out(notification: TouchpointNotification, now: float | None = None) -> bool:
    """True once an unanswered, finite touchpoint is past its deadline."""
    if notification.responded_at is not None:
        return False
    if not math.isfinite(notification.timeout_seconds):
        return False
    now = time.time() if now is None else now
    return now > notification.posted_at + notification.timeout_seconds


# =============================================================================
# Posted notification records
# =============================================================================


class TouchpointStore:
    """Posted touchpoints in the shared store, so timeouts survive restarts."""

    def __init__(self, db: Database):
        self.db = db

    def save(self, issue_id: str, notification: TouchpointNotification) -> TouchpointNotification:
        """Persist a posted notification keyed by the issue's internal id."""
        timeout = notification.timeout_seconds if math.isfinite(notification.timeout_seconds) else None
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO touchpoints (issue_id, type, body, posted_at, timeout_seconds)
                VALUES (?, ?, ?, ?, ?)
                """,
                (issue_id, notification.type, notification.body, notification.posted_at, timeout),
            )
            notification.id = cursor.lastrowid
        return notification

    def pending(self, issue_id: str | None = None) -> list[tuple[str, TouchpointNotification]]:
        """Unanswered, not yet auto-proceeded touchpoints as (issue_id, notification)."""
        query = """
            SELECT * FROM touchpoints
            WHERE responded_at IS NULL AND auto_proceeded_at IS NULL
        """
        params: tuple = ()
        if issue_id:
            query += " AND issue_id = ?"
            params = (issue_id,)
        query += " ORDER BY posted_at"

        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [(r["issue_id"], self._from_row(r)) for r in rows]

    def mark_responded(self, issue_id: str, responded_at: float | None = None) -> int:
        """Mark every open touchpoint on the issue as answered."""
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE touchpoints SET responded_at = ?
                WHERE issue_id = ? AND responded_at IS NULL AND auto_proceeded_at IS NULL
                """,
                (time.time() if responded_at is None else responded_at, issue_id),
            )
            return cursor.rowcount

    def mark_auto_proceeded(self, touchpoint_id: int, at: float | None = None) -> None:
        with self.db.connection() as conn:
            conn.execute(
                "UPDATE touchpoints SET auto_proceeded_at = ? WHERE id = ?",
                (time.time() if at is None else at, touchpoint_id),
            )

    @staticmethod
    def _from_row(row) -> TouchpointNotification:
        timeout = row["timeout_seconds"]
        return TouchpointNotification(
            type=row["type"],
            issue_id=row["issue_id"],
            body=row["body"],
            posted_at=row["posted_at"],
            timeout_seconds=math.inf if timeout is None else timeout,
            responded_at=row["responded_at"],
            id=row["id"],
        )
