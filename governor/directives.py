"""Parsing of human override directives from issue comments.

A directive is the first line of a non-bot comment and is matched
case-insensitively:

    HOLD                     pause autonomous processing
    HOLD — reason            pause, with a reason (em-dash, en-dash or hyphen)
    RESUME                   clear the override and reset escalation
    SKIP QA / SKIP-QA        skip QA, go straight to acceptance
    DECOMPOSE                break the issue into sub-issues
    REASSIGN                 stop agent work, hand to a human
    PRIORITY: high|medium|low

Comment text is untrusted. Anything that doesn't match is "no directive",
never an error.
"""

import re
from dataclasses import dataclass
from typing import Any, Literal

from .config import OverridePriority


DirectiveType = Literal["hold", "resume", "skip-qa", "decompose", "reassign", "priority"]


@dataclass(frozen=True)
class CommentInfo:
    """A tracker comment to scan for a directive."""
    id: str
    body: str
    user_id: str | None = None
    is_bot: bool = False
    created_at: float = 0.0


@dataclass(frozen=True)
class OverrideDirective:
    type: DirectiveType
    priority: OverridePriority | None = None
    reason: str | None = None
    comment_id: str | None = None
    user_id: str | None = None
    timestamp: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OverrideDirective":
        return cls(
            type=data["type"],
            priority=data.get("priority"),
            reason=data.get("reason"),
            comment_id=data.get("comment_id"),
            user_id=data.get("user_id"),
            timestamp=float(data.get("timestamp") or 0.0),
        )


# Checked in order against the first line of the comment
DIRECTIVE_PATTERNS: list[tuple[DirectiveType, re.Pattern]] = [
    ("hold", re.compile(r"^hold(?:\s*[—–-]\s*(.+))?$", re.IGNORECASE)),
    ("resume", re.compile(r"^resume$", re.IGNORECASE)),
    ("skip-qa", re.compile(r"^skip[\s-]+qa$", re.IGNORECASE)),
    ("decompose", re.compile(r"^decompose$", re.IGNORECASE)),
    ("reassign", re.compile(r"^reassign$", re.IGNORECASE)),
    ("priority", re.compile(r"^priority:\s*(high|medium|low)$", re.IGNORECASE)),
]


def parse_override_directive(comment: CommentInfo) -> OverrideDirective | None:
    """Extract the directive from a comment, or None if it has none."""
    if comment.is_bot:
        return None

    body = (comment.body or "").strip()
    if not body:
        return None
    first_line = body.splitlines()[0].strip()
    if not first_line:
        return None

    for directive_type, pattern in DIRECTIVE_PATTERNS:
        match = pattern.match(first_line)
        if not match:
            continue

        reason = None
        priority = None
        if directive_type == "hold" and match.group(1):
            reason = match.group(1).strip()
        if directive_type == "priority":
            priority = match.group(1).lower()

        return OverrideDirective(
            type=directive_type,
            priority=priority,
            reason=reason,
            comment_id=comment.id,
            user_id=comment.user_id,
            timestamp=comment.created_at,
        )

    return None


def find_latest_override(comments: list[CommentInfo]) -> OverrideDirective | None:
    """The most recent directive across comments given in any order."""
    latest = None
    for comment in comments:
        directive = parse_override_directive(comment)
        if directive and (latest is None or directive.timestamp > latest.timestamp):
            latest = directive
    return latest
