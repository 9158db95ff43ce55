"""Event-driven governor.

Consumes events from a ``GovernorEventBus`` and evaluates the affected issue
as soon as something happens to it, using the same per-issue evaluation as
the poll-only governor. A slower poll sweep publishes a ``PollSnapshot`` for
every listed issue so that a missed webhook only costs latency, never
correctness.
"""

import logging
from datetime import datetime
from typing import Callable

from .config import GovernorConfig
from .dependencies import GovernorDependencies
from .directives import CommentInfo, parse_override_directive
from .escalation import EscalationManager
from .event_bus import EventDeduplicator, GovernorEventBus
from .events import CommentAdded, GovernorEvent, PollSnapshot, event_dedup_key
from .exceptions import MalformedEventError
from .models import ScanResult
from .scheduler import WorkflowGovernor

logger = logging.getLogger(__name__)


def _timestamp_seconds(iso_timestamp: str) -> float:
    try:
        return datetime.fromisoformat(iso_timestamp).timestamp()
    except (TypeError, ValueError):
        return 0.0


class EventDrivenGovernor(WorkflowGovernor):
    """Governor driven by an event stream, with a poll sweep as a safety net.

    Args:
        config: Governor settings (``poll_interval_seconds``,
            ``enable_polling`` and ``dedup_window_seconds`` apply here)
        deps: External collaborators
        event_bus: Source of events, also the sink for poll snapshots
        deduplicator: Optional; drops repeats of the same occurrence
        escalation: Applies directives found in comments. Without it,
            directives are ignored and the issue is just re-evaluated.
        on_error: Called with exceptions raised while handling events
    """

    def __init__(
        self,
        config: GovernorConfig,
        deps: GovernorDependencies,
        event_bus: GovernorEventBus,
        deduplicator: EventDeduplicator | None = None,
        escalation: EscalationManager | None = None,
        on_scan_complete: Callable[[list[ScanResult]], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        super().__init__(
            config,
            deps,
            escalation=escalation,
            on_scan_complete=on_scan_complete,
            on_error=on_error,
        )
        self.event_bus = event_bus
        self.deduplicator = deduplicator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _start_threads(self) -> None:
        # stop() closed the bus; a restart consumes from it again
        self.event_bus.reopen()
        self._spawn(self._consume_events, "governor-events")
        if self.config.enable_polling:
            self._spawn(self._poll_loop, "governor-poll")

        logger.info(
            "Event-driven governor listening (polling=%s interval=%ss dedup=%s)",
            self.config.enable_polling,
            self.config.poll_interval_seconds,
            self.deduplicator is not None,
        )

    def stop(self) -> None:
        """Stop consuming and polling. The event being handled finishes first.

        The bus is closed so the consumer wakes up; ``start()`` reopens it.
        """
        was_running = self._running
        super().stop()
        if was_running:
            self.event_bus.close()

    def _consume_events(self) -> None:
        try:
            for event_id, event in self.event_bus.subscribe():
                if not self._running:
                    break
                try:
                    self.process_event(event_id, event)
                except Exception as e:
                    logger.error(
                        "Error processing event %s (%s): %s",
                        event_id, getattr(event, "type", "?"), e,
                    )
                    self._report_error(e)
        except Exception as e:
            if self._running:
                logger.exception("Event loop terminated unexpectedly")
                self._report_error(e)

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.config.poll_interval_seconds):
            try:
                self.process_touchpoint_timeouts()
                self.poll_sweep()
            except Exception as e:
                logger.exception("Poll sweep failed")
                self._report_error(e)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def process_event(self, event_id: str, event: GovernorEvent) -> None:
        """Dedup, route and ack one event.

        Malformed and duplicate events are acked and dropped. An event whose
        handling raises is left unacked so a durable bus can redeliver it.
        """
        try:
            dedup_key = event_dedup_key(event)
        except MalformedEventError as e:
            logger.error("Dropping malformed event %s: %s", event_id, e)
            self.event_bus.ack(event_id)
            return

        if self.deduplicator is not None and self.deduplicator.seen(
            dedup_key, self.config.dedup_window_seconds
        ):
            logger.debug("Skipping duplicate event %s (%s)", event_id, dedup_key)
            self.event_bus.ack(event_id)
            return

        logger.info("Processing event %s: %s for %s", event_id, event.type, event.issue_id)

        if isinstance(event, CommentAdded):
            self._handle_comment(event)
        else:
            self.evaluate_and_dispatch(event.issue)

        self.event_bus.ack(event_id)

    def _handle_comment(self, event: CommentAdded) -> None:
        directive = parse_override_directive(CommentInfo(
            id=event.comment_id,
            body=event.comment_body,
            user_id=event.user_id,
            is_bot=event.is_bot,
            created_at=_timestamp_seconds(event.timestamp),
        ))

        if directive is None:
            logger.debug("No directive in comment %s, evaluating %s", event.comment_id, event.issue_id)
            self.evaluate_and_dispatch(event.issue)
            return

        logger.info("Override directive %s on %s", directive.type, event.issue_id)
        if self.escalation is None:
            logger.warning("No escalation manager configured, ignoring %s directive", directive.type)
            self.evaluate_and_dispatch(event.issue)
            return

        self.escalation.apply_directive(event.issue_id, directive)
        if directive.type == "resume":
            self.evaluate_and_dispatch(event.issue)

    # ------------------------------------------------------------------
    # Poll sweep
    # ------------------------------------------------------------------

    def poll_sweep(self) -> int:
        """Publish a snapshot event for every issue in every project.

        Returns:
            Number of snapshot events published
        """
        published = 0
        for project in self.config.projects:
            try:
                issues = self.deps.list_issues(project)
                for issue in issues:
                    self.event_bus.publish(PollSnapshot(
                        issue_id=issue.id,
                        issue=issue,
                        project=project,
                    ))
                    published += 1
            except Exception as e:
                logger.error("Poll sweep failed for project %s: %s", project, e)
                continue
            logger.debug("Poll sweep published %d event(s) for %s", len(issues), project)

        logger.info("Poll sweep complete (%d issue(s))", published)
        return published
