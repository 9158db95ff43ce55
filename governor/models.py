"""Shared data types for the governor core."""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal


Action = Literal[
    "none",
    "trigger-research",
    "trigger-backlog-creation",
    "trigger-development",
    "trigger-qa",
    "trigger-acceptance",
    "trigger-refinement",
    "decompose",
    "escalate-human",
]

WorkType = Literal[
    "research",
    "backlog-creation",
    "development",
    "qa",
    "acceptance",
    "refinement",
    "coordination",
    "escalation",
]

# Downstream work type dispatched for each action
ACTION_WORK_TYPES: dict[str, WorkType] = {
    "trigger-research": "research",
    "trigger-backlog-creation": "backlog-creation",
    "trigger-development": "development",
    "trigger-qa": "qa",
    "trigger-acceptance": "acceptance",
    "trigger-refinement": "refinement",
    "decompose": "coordination",
    "escalate-human": "escalation",
}


@dataclass(frozen=True)
class Issue:
    """Read-only snapshot of an issue from the tracker."""
    id: str
    identifier: str
    title: str
    status: str
    labels: frozenset[str] = frozenset()
    created_at: float = 0.0
    description: str | None = None
    parent_id: str | None = None
    project: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["labels"] = sorted(self.labels)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Issue":
        return cls(
            id=data["id"],
            identifier=data["identifier"],
            title=data.get("title", ""),
            status=data["status"],
            labels=frozenset(data.get("labels") or ()),
            created_at=float(data.get("created_at") or 0.0),
            description=data.get("description"),
            parent_id=data.get("parent_id"),
            project=data.get("project"),
        )


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one issue. ``reason`` is always set."""
    action: Action
    reason: str
    work_type: WorkType | None = None

    @property
    def is_actionable(self) -> bool:
        return self.action != "none"


@dataclass
class ScanError:
    issue_id: str
    error: str


@dataclass
class ScanResult:
    """Outcome of one scan pass over one project."""
    project: str
    scanned_issues: int = 0
    actions_dispatched: int = 0
    skipped_reasons: dict[str, str] = field(default_factory=dict)
    errors: list[ScanError] = field(default_factory=list)


@dataclass
class QueuedWork:
    """A unit of dispatched work waiting for a worker to claim it.

    ``session_id`` is the claim token: at most one worker ever receives a
    given session id from the queue.
    """
    session_id: str
    issue_id: str
    issue_identifier: str
    priority: int
    queued_at: float
    work_type: str
    project_name: str | None = None
    prompt: str | None = None
    provider_session_id: str | None = None
    source_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedWork":
        return cls(
            session_id=data["session_id"],
            issue_id=data["issue_id"],
            issue_identifier=data["issue_identifier"],
            priority=int(data["priority"]),
            queued_at=float(data["queued_at"]),
            work_type=data["work_type"],
            project_name=data.get("project_name"),
            prompt=data.get("prompt"),
            provider_session_id=data.get("provider_session_id"),
            source_session_id=data.get("source_session_id"),
        )
