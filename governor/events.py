"""Governor events.

``GovernorEvent`` is a tagged union: one frozen dataclass per kind of
occurrence, each carrying only its own fields plus the issue snapshot. The
``type`` tag is what goes over the wire in the shared event bus.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Literal, Union

from .exceptions import MalformedEventError
from .models import Issue


EventSource = Literal["webhook", "poll", "manual"]


def event_timestamp() -> str:
    """Current time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class IssueStatusChanged:
    type: ClassVar[str] = "issue-status-changed"

    issue_id: str
    issue: Issue
    new_status: str
    previous_status: str | None = None
    source: EventSource = "webhook"
    timestamp: str = field(default_factory=event_timestamp)


@dataclass(frozen=True)
class CommentAdded:
    type: ClassVar[str] = "comment-added"

    issue_id: str
    issue: Issue
    comment_id: str
    comment_body: str
    user_id: str | None = None
    user_name: str | None = None
    is_bot: bool = False
    source: EventSource = "webhook"
    timestamp: str = field(default_factory=event_timestamp)


@dataclass(frozen=True)
class SessionCompleted:
    type: ClassVar[str] = "session-completed"

    issue_id: str
    issue: Issue
    session_id: str
    outcome: Literal["success", "failure"]
    source: EventSource = "webhook"
    timestamp: str = field(default_factory=event_timestamp)


@dataclass(frozen=True)
class PollSnapshot:
    type: ClassVar[str] = "poll-snapshot"

    issue_id: str
    issue: Issue
    project: str
    source: EventSource = "poll"
    timestamp: str = field(default_factory=event_timestamp)


GovernorEvent = Union[IssueStatusChanged, CommentAdded, SessionCompleted, PollSnapshot]

EVENT_TYPES: dict[str, type] = {
    cls.type: cls for cls in (IssueStatusChanged, CommentAdded, SessionCompleted, PollSnapshot)
}


def event_dedup_key(event: GovernorEvent) -> str:
    """Key identifying "the same occurrence" of an event."""
    if isinstance(event, IssueStatusChanged):
        return f"{event.issue_id}:{event.new_status}"
    if isinstance(event, CommentAdded):
        return f"{event.issue_id}:comment:{event.comment_id}"
    if isinstance(event, SessionCompleted):
        return f"{event.issue_id}:session:{event.session_id}"
    if isinstance(event, PollSnapshot):
        return f"{event.issue_id}:{event.issue.status}"
    raise MalformedEventError(f"Unknown event type: {type(event).__name__}")


def event_to_dict(event: GovernorEvent) -> dict[str, Any]:
    data = asdict(event)
    data["issue"] = event.issue.to_dict()
    data["type"] = event.type
    return data


def event_from_dict(data: dict[str, Any]) -> GovernorEvent:
    """Decode an event payload.

    Raises:
        MalformedEventError: if the payload is not a recognizable event
    """
    if not isinstance(data, dict):
        raise MalformedEventError("Event payload must be an object")

    event_cls = EVENT_TYPES.get(data.get("type"))
    if event_cls is None:
        raise MalformedEventError(f"Unknown event type: {data.get('type')!r}")

    fields = {k: v for k, v in data.items() if k != "type"}
    try:
        fields["issue"] = Issue.from_dict(fields["issue"])
        return event_cls(**fields)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEventError(f"Invalid {event_cls.type} event: {e}") from e
