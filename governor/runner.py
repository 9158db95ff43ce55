"""Wiring for running a governor against the shared store.

The hosting process supplies the issue source (and, optionally, a way to
post comments and build prompts); everything else is built here from the
shared SQLite store.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Literal

from .config import GovernorConfig
from .db import Database
from .dependencies import GovernorDependencies, StoreDependencies
from .escalation import EscalationManager, WorkflowStateStore
from .event_bus import (
    EventDeduplicator,
    GovernorEventBus,
    SqliteEventBus,
    SqliteEventDeduplicator,
)
from .event_governor import EventDrivenGovernor
from .models import Issue, ScanResult
from .processing_state import ProcessingStateStore
from .scheduler import WorkflowGovernor
from .sessions import SessionStore
from .touchpoints import OverrideStore, SqliteOverrideStorage, TouchpointStore
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

GovernorMode = Literal["poll-only", "event-driven"]


@dataclass
class GovernorStores:
    """Every store-backed component, built over one database."""
    db: Database
    queue: WorkQueue
    sessions: SessionStore
    overrides: OverrideStore
    workflow: WorkflowStateStore
    touchpoints: TouchpointStore
    processing: ProcessingStateStore


def build_stores(db: Database) -> GovernorStores:
    db.init_schema()
    return GovernorStores(
        db=db,
        queue=WorkQueue(db),
        sessions=SessionStore(db),
        overrides=OverrideStore(SqliteOverrideStorage(db)),
        workflow=WorkflowStateStore(db),
        touchpoints=TouchpointStore(db),
        processing=ProcessingStateStore(db),
    )


def build_dependencies(
    config: GovernorConfig,
    stores: GovernorStores,
    issue_lister: Callable[[str], list[Issue]],
    parent_checker: Callable[[str], bool] | None = None,
    prompt_builder: Callable[[Issue, str], str | None] | None = None,
) -> StoreDependencies:
    return StoreDependencies(
        config=config,
        queue=stores.queue,
        sessions=stores.sessions,
        overrides=stores.overrides,
        workflow=stores.workflow,
        processing=stores.processing,
        issue_lister=issue_lister,
        parent_checker=parent_checker,
        prompt_builder=prompt_builder,
    )


def build_escalation(
    config: GovernorConfig,
    stores: GovernorStores,
    post_comment: Callable[[str, str], None] | None = None,
) -> EscalationManager:
    return EscalationManager(
        overrides=stores.overrides,
        workflow=stores.workflow,
        touchpoints=stores.touchpoints,
        config=config.touchpoints,
        post_comment=post_comment,
    )


def log_scan_results(results: list[ScanResult]) -> None:
    """Default scan callback: one summary line per project, plus errors."""
    for result in results:
        logger.info(
            "[%s] scanned=%d dispatched=%d skipped=%d errors=%d",
            result.project,
            result.scanned_issues,
            result.actions_dispatched,
            len(result.skipped_reasons),
            len(result.errors),
        )
        for error in result.errors:
            logger.warning("[%s] %s: %s", result.project, error.issue_id, error.error)


def run_governor(
    config: GovernorConfig,
    deps: GovernorDependencies,
    mode: GovernorMode = "poll-only",
    once: bool = False,
    escalation: EscalationManager | None = None,
    event_bus: GovernorEventBus | None = None,
    deduplicator: EventDeduplicator | None = None,
    on_scan_complete: Callable[[list[ScanResult]], None] | None = log_scan_results,
    on_error: Callable[[Exception], None] | None = None,
) -> WorkflowGovernor | list[ScanResult]:
    """Build and start a governor.

    Args:
        mode: "poll-only" scans on an interval; "event-driven" consumes
            ``event_bus`` with a poll sweep as a safety net
        once: Run a single scan and return its results instead of starting
            a loop (always a poll-only scan)

    Returns:
        The running governor, or the scan results when ``once`` is set
    """
    if mode not in ("poll-only", "event-driven"):
        raise ValueError(f"Unknown governor mode: {mode}")

    if once:
        governor = WorkflowGovernor(
            config, deps, escalation=escalation,
            on_scan_complete=on_scan_complete, on_error=on_error,
        )
        logger.info("Running single scan over %s", list(config.projects))
        return governor.scan_once()

    if mode == "event-driven":
        if event_bus is None:
            raise ValueError("event-driven mode needs an event bus")
        governor = EventDrivenGovernor(
            config, deps, event_bus,
            deduplicator=deduplicator,
            escalation=escalation,
            on_scan_complete=on_scan_complete,
            on_error=on_error,
        )
    else:
        governor = WorkflowGovernor(
            config, deps, escalation=escalation,
            on_scan_complete=on_scan_complete, on_error=on_error,
        )

    governor.start()
    return governor


def run_with_store(
    config: GovernorConfig,
    db: Database,
    issue_lister: Callable[[str], list[Issue]],
    mode: GovernorMode = "poll-only",
    once: bool = False,
    parent_checker: Callable[[str], bool] | None = None,
    post_comment: Callable[[str, str], None] | None = None,
    prompt_builder: Callable[[Issue, str], str | None] | None = None,
) -> WorkflowGovernor | list[ScanResult]:
    """Run a governor whose state, queue and event bus live in ``db``."""
    stores = build_stores(db)
    deps = build_dependencies(config, stores, issue_lister, parent_checker, prompt_builder)
    escalation = build_escalation(config, stores, post_comment)

    event_bus = None
    deduplicator = None
    if mode == "event-driven":
        event_bus = SqliteEventBus(db)
        deduplicator = SqliteEventDeduplicator(db, window_seconds=config.dedup_window_seconds)

    return run_governor(
        config,
        deps,
        mode=mode,
        once=once,
        escalation=escalation,
        event_bus=event_bus,
        deduplicator=deduplicator,
    )
