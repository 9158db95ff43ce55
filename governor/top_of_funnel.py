"""Icebox heuristics for auto-research and auto-backlog-creation.

All functions here are pure. The decision engine uses them to tell an
issue that still needs research from one whose description is already
detailed enough to be broken into backlog issues.
"""

from .config import TopOfFunnelConfig
from .models import Issue


def is_well_researched(description: str | None, config: TopOfFunnelConfig) -> bool:
    """True if the description is long enough and has a structured header."""
    if not description:
        return False
    if len(description) < config.min_researched_description_length:
        return False
    return any(header in description for header in config.researched_headers)


def research_request_labels(issue: Issue, config: TopOfFunnelConfig) -> list[str]:
    """Labels on the issue that explicitly ask for research, sorted."""
    return sorted(label for label in issue.labels if label in config.research_request_labels)


def needs_research(issue: Issue, config: TopOfFunnelConfig) -> bool:
    """A research-request label, or a description that isn't well researched."""
    if research_request_labels(issue, config):
        return True
    return not is_well_researched(issue.description, config)


def icebox_age_seconds(issue: Issue, now: float) -> float:
    return now - issue.created_at


def is_research_due(issue: Issue, config: TopOfFunnelConfig, now: float | None) -> bool:
    """True once the issue has sat in Icebox for the research delay.

    Without a clock reading the delay is not applied.
    """
    if now is None:
        return True
    return icebox_age_seconds(issue, now) >= config.icebox_research_delay_seconds
