"""Shared test fixtures for governor tests."""

import shutil
import tempfile
import threading
from pathlib import Path

import pytest

from governor.config import GovernorConfig
from governor.db import Database
from governor.models import Issue


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp()
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def db(temp_dir):
    """A fresh shared store with the schema initialized."""
    database = Database(temp_dir / "state.db")
    database.init_schema()
    return database


@pytest.fixture
def make_issue():
    """Factory for issue snapshots with sensible defaults."""
    def _make(identifier="DEMO-1", status="Backlog", **kw):
        fields = {
            "id": f"id-{identifier}",
            "identifier": identifier,
            "title": f"Issue {identifier}",
            "status": status,
            "project": "Demo",
        }
        fields.update(kw)
        return Issue(**fields)
    return _make


class FakeDependencies:
    """In-memory GovernorDependencies with per-issue knobs.

    Every predicate defaults to False / None. ``dispatched`` records
    (issue_id, action, work_type) for each successful dispatch.
    """

    def __init__(self, issues=None):
        self.issues: dict[str, list[Issue]] = issues or {}
        self.active_sessions: set[str] = set()
        self.cooldowns: set[str] = set()
        self.parents: set[str] = set()
        self.held: set[str] = set()
        self.priorities: dict[str, str] = {}
        self.strategies: dict[str, str] = {}
        self.research_done: set[str] = set()
        self.backlog_done: set[str] = set()
        self.failing_projects: set[str] = set()
        self.failing_dispatch: set[str] = set()
        self.failing_context: set[str] = set()
        self.dispatched: list[tuple[str, str, str]] = []
        # When set, list_issues parks on it so a scan can be held mid-flight
        self.list_gate: threading.Event | None = None
        self.list_entered = threading.Event()

    def list_issues(self, project):
        self.list_entered.set()
        if self.list_gate is not None:
            self.list_gate.wait(5)
        if project in self.failing_projects:
            raise ConnectionError(f"tracker unavailable for {project}")
        return list(self.issues.get(project, []))

    def has_active_session(self, issue_id):
        if issue_id in self.failing_context:
            raise TimeoutError("session lookup timed out")
        return issue_id in self.active_sessions

    def is_within_cooldown(self, issue_id):
        return issue_id in self.cooldowns

    def is_parent_issue(self, issue_id):
        return issue_id in self.parents

    def is_held(self, issue_id):
        return issue_id in self.held

    def get_override_priority(self, issue_id):
        return self.priorities.get(issue_id)

    def get_workflow_strategy(self, issue_id):
        return self.strategies.get(issue_id)

    def is_research_completed(self, issue_id):
        return issue_id in self.research_done

    def is_backlog_creation_completed(self, issue_id):
        return issue_id in self.backlog_done

    def dispatch_work(self, issue, action, work_type):
        if issue.id in self.failing_dispatch:
            raise RuntimeError(f"dispatch failed for {issue.identifier}")
        self.dispatched.append((issue.id, action, work_type))


@pytest.fixture
def make_deps():
    """Factory: make_deps({"Demo": [issue, ...]}) -> FakeDependencies."""
    return FakeDependencies


@pytest.fixture
def demo_config():
    """Config with a single "Demo" project and default flags."""
    return GovernorConfig(projects=("Demo",))
