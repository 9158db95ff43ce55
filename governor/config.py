"""Configuration loading and constants for the governor."""

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

import yaml

from .exceptions import ConfigError


# ---------------------------------------------------------------------------
# Workflow strategies: advanced by failed dev -> QA round-trips
# ---------------------------------------------------------------------------

WorkflowStrategy = Literal[
    "normal",
    "context-enriched",
    "decompose",
    "escalate-human",
]

OverridePriority = Literal["high", "medium", "low"]

# Sort rank used when ordering a scan's dispatches
OVERRIDE_PRIORITY_RANK: dict[str | None, int] = {
    "high": 0,
    "medium": 1,
    "low": 2,
    None: 3,
}

HOUR = 60 * 60

# Default governor settings (can be overridden in governor.yaml)
DEFAULT_GOVERNOR_CONFIG = {
    "projects": [],
    "scan_interval_seconds": 60,
    "max_concurrent_dispatches": 3,
    "enable_auto_research": False,
    "enable_auto_backlog_creation": False,
    "enable_auto_development": True,
    "enable_auto_qa": True,
    "enable_auto_acceptance": True,
    "human_response_timeout_seconds": 4 * HOUR,
    "qa_cooldown_seconds": 5 * 60,
    "enable_polling": True,
    "poll_interval_seconds": 5 * 60,
    "dedup_window_seconds": 10,
}

# Tracker status names mapped to the workflow stage they represent
DEFAULT_STATUS_MAP = {
    "icebox": "Icebox",
    "backlog": "Backlog",
    "started": "Started",
    "finished": "Finished",
    "delivered": "Delivered",
    "rejected": "Rejected",
    "terminal": ["Accepted", "Canceled", "Duplicate"],
}

DEFAULT_TOUCHPOINT_CONFIG = {
    "review_request_timeout_seconds": 4 * HOUR,
    "decomposition_proposal_timeout_seconds": 2 * HOUR,
    "escalation_alert_timeout_seconds": math.inf,
}

# Icebox heuristics: when an issue needs research, and when it can go
# straight to backlog creation
DEFAULT_TOP_OF_FUNNEL_CONFIG = {
    "icebox_research_delay_seconds": HOUR,
    "min_researched_description_length": 200,
    "researched_headers": [
        "## Acceptance Criteria",
        "## Technical Approach",
        "## Summary",
        "## Design",
        "## Requirements",
    ],
    "research_request_labels": ["Needs Research"],
}


@dataclass(frozen=True)
class StatusMap:
    """Which tracker statuses count as each workflow stage."""
    icebox: str = "Icebox"
    backlog: str = "Backlog"
    started: str = "Started"
    finished: str = "Finished"
    delivered: str = "Delivered"
    rejected: str = "Rejected"
    terminal: frozenset[str] = frozenset({"Accepted", "Canceled", "Duplicate"})

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal


@dataclass(frozen=True)
class TouchpointConfig:
    review_request_timeout_seconds: float = 4 * HOUR
    decomposition_proposal_timeout_seconds: float = 2 * HOUR
    escalation_alert_timeout_seconds: float = math.inf


@dataclass(frozen=True)
class TopOfFunnelConfig:
    """How Icebox issues are split between research and backlog creation.

    A description is "well researched" when it is at least
    ``min_researched_description_length`` characters long and contains one
    of ``researched_headers``. Research is only triggered once an issue has
    sat in Icebox for ``icebox_research_delay_seconds``.
    """
    icebox_research_delay_seconds: float = HOUR
    min_researched_description_length: int = 200
    researched_headers: tuple[str, ...] = tuple(DEFAULT_TOP_OF_FUNNEL_CONFIG["researched_headers"])
    research_request_labels: tuple[str, ...] = tuple(DEFAULT_TOP_OF_FUNNEL_CONFIG["research_request_labels"])


@dataclass(frozen=True)
class GovernorConfig:
    """Immutable governor settings.

    ``max_concurrent_dispatches`` bounds dispatches per project per scan,
    not globally.
    """
    projects: tuple[str, ...] = ()
    scan_interval_seconds: float = 60
    max_concurrent_dispatches: int = 3
    enable_auto_research: bool = False
    enable_auto_backlog_creation: bool = False
    enable_auto_development: bool = True
    enable_auto_qa: bool = True
    enable_auto_acceptance: bool = True
    human_response_timeout_seconds: float = 4 * HOUR
    qa_cooldown_seconds: float = 5 * 60
    enable_polling: bool = True
    poll_interval_seconds: float = 5 * 60
    dedup_window_seconds: float = 10
    statuses: StatusMap = field(default_factory=StatusMap)
    touchpoints: TouchpointConfig = field(default_factory=TouchpointConfig)
    top_of_funnel: TopOfFunnelConfig = field(default_factory=TopOfFunnelConfig)


def build_governor_config(data: dict[str, Any] | None = None) -> GovernorConfig:
    """Merge a raw settings dict over the defaults and validate it.

    Raises:
        ConfigError: if a value has the wrong shape
    """
    data = dict(data or {})
    unknown = set(data) - set(DEFAULT_GOVERNOR_CONFIG) - {"statuses", "touchpoints", "top_of_funnel"}
    if unknown:
        raise ConfigError(f"Unknown governor settings: {', '.join(sorted(unknown))}")

    merged = {**DEFAULT_GOVERNOR_CONFIG, **{k: v for k, v in data.items() if k in DEFAULT_GOVERNOR_CONFIG}}

    projects = merged["projects"]
    if isinstance(projects, str) or not isinstance(projects, (list, tuple)):
        raise ConfigError("'projects' must be a list of project names")
    if merged["max_concurrent_dispatches"] < 1:
        raise ConfigError("'max_concurrent_dispatches' must be at least 1")
    for key in ("scan_interval_seconds", "poll_interval_seconds", "dedup_window_seconds"):
        if merged[key] <= 0:
            raise ConfigError(f"'{key}' must be positive")

    statuses_raw = {**DEFAULT_STATUS_MAP, **(data.get("statuses") or {})}
    terminal = statuses_raw["terminal"]
    if isinstance(terminal, str):
        terminal = [terminal]
    statuses = StatusMap(
        icebox=statuses_raw["icebox"],
        backlog=statuses_raw["backlog"],
        started=statuses_raw["started"],
        finished=statuses_raw["finished"],
        delivered=statuses_raw["delivered"],
        rejected=statuses_raw["rejected"],
        terminal=frozenset(terminal),
    )

    # The review window follows the human response timeout unless set explicitly
    touchpoints_raw = {
        **DEFAULT_TOUCHPOINT_CONFIG,
        "review_request_timeout_seconds": merged["human_response_timeout_seconds"],
        **(data.get("touchpoints") or {}),
    }
    touchpoints = TouchpointConfig(
        review_request_timeout_seconds=_seconds(touchpoints_raw["review_request_timeout_seconds"]),
        decomposition_proposal_timeout_seconds=_seconds(
            touchpoints_raw["decomposition_proposal_timeout_seconds"]
        ),
        escalation_alert_timeout_seconds=_seconds(touchpoints_raw["escalation_alert_timeout_seconds"]),
    )

    funnel_raw = {**DEFAULT_TOP_OF_FUNNEL_CONFIG, **(data.get("top_of_funnel") or {})}
    for key in ("researched_headers", "research_request_labels"):
        if isinstance(funnel_raw[key], str):
            funnel_raw[key] = [funnel_raw[key]]
    if funnel_raw["min_researched_description_length"] < 0:
        raise ConfigError("'min_researched_description_length' must not be negative")
    top_of_funnel = TopOfFunnelConfig(
        icebox_research_delay_seconds=_seconds(funnel_raw["icebox_research_delay_seconds"]),
        min_researched_description_length=int(funnel_raw["min_researched_description_length"]),
        researched_headers=tuple(funnel_raw["researched_headers"]),
        research_request_labels=tuple(funnel_raw["research_request_labels"]),
    )

    return GovernorConfig(
        projects=tuple(projects),
        scan_interval_seconds=merged["scan_interval_seconds"],
        max_concurrent_dispatches=int(merged["max_concurrent_dispatches"]),
        enable_auto_research=bool(merged["enable_auto_research"]),
        enable_auto_backlog_creation=bool(merged["enable_auto_backlog_creation"]),
        enable_auto_development=bool(merged["enable_auto_development"]),
        enable_auto_qa=bool(merged["enable_auto_qa"]),
        enable_auto_acceptance=bool(merged["enable_auto_acceptance"]),
        human_response_timeout_seconds=_seconds(merged["human_response_timeout_seconds"]),
        qa_cooldown_seconds=merged["qa_cooldown_seconds"],
        enable_polling=bool(merged["enable_polling"]),
        poll_interval_seconds=merged["poll_interval_seconds"],
        dedup_window_seconds=merged["dedup_window_seconds"],
        statuses=statuses,
        touchpoints=touchpoints,
        top_of_funnel=top_of_funnel,
    )


def _seconds(value: Any) -> float:
    """Accept a number of seconds, or "never"/null for an infinite timeout."""
    if value is None or (isinstance(value, str) and value.lower() in ("never", "inf", "infinity")):
        return math.inf
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid duration: {value!r}") from e


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

def get_state_dir() -> Path:
    """Get the .governor state directory.

    Can be overridden via GOVERNOR_DIR environment variable (used by tests
    and by workers sharing one store).
    """
    env_override = os.environ.get("GOVERNOR_DIR")
    if env_override:
        return Path(env_override)
    return Path.cwd() / ".governor"


def get_config_path() -> Path:
    """Get path to governor.yaml."""
    return get_state_dir() / "governor.yaml"


def get_database_path() -> Path:
    """Get path to the shared SQLite store."""
    return get_state_dir() / "state.db"


def get_logs_dir() -> Path:
    """Get the logs directory."""
    return get_state_dir() / "logs"


def load_governor_config(path: Path | None = None) -> GovernorConfig:
    """Load governor settings from governor.yaml.

    A missing file yields the defaults.

    Raises:
        ConfigError: if the file is not valid YAML or holds invalid values
    """
    config_path = path or get_config_path()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return build_governor_config()
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {config_path}: {e}", path=str(config_path)) from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping", path=str(config_path))

    # Allow settings nested under a top-level "governor" key
    if isinstance(data.get("governor"), dict):
        data = data["governor"]

    try:
        return build_governor_config(data)
    except ConfigError as e:
        e.path = str(config_path)
        raise


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def setup_logging(debug: bool = False, logs_dir: Path | None = None) -> Path:
    """Configure the ``governor`` logger with a dated log file.

    Returns:
        Path of today's log file
    """
    logs_dir = logs_dir or get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    date_str = datetime.now().strftime("%Y-%m-%d")
    log_file = logs_dir / f"governor-{date_str}.log"

    root = logging.getLogger("governor")
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    if not any(
        isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(log_file)
        for h in root.handlers
    ):
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    return log_file
