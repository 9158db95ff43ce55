"""Tests for session records and processing state."""

import pytest

from governor.processing_state import ProcessingStateStore
from governor.sessions import SessionStore


@pytest.fixture
def sessions(db):
    return SessionStore(db)


class TestSessionStore:
    def test_create_defaults_to_pending(self, sessions):
        record = sessions.create("s1", "issue-1", "DEMO-1", work_type="qa", project_name="Demo", priority=2)
        assert record.status == "pending"
        assert record.work_type == "qa"
        assert record.priority == 2
        assert record.total_cost_usd == 0.0
        assert record.created_at > 0

    def test_create_if_idle(self, sessions):
        record = sessions.create_if_idle("s1", "issue-1", "DEMO-1", work_type="development", priority=3)
        assert record.status == "pending"
        assert record.priority == 3

    def test_create_if_idle_refuses_busy_issue(self, sessions):
        sessions.create_if_idle("s1", "issue-1", "DEMO-1")
        assert sessions.create_if_idle("s2", "issue-1", "DEMO-1") is None
        assert sessions.get("s2") is None

        sessions.update_status("s1", "completed")
        assert sessions.create_if_idle("s2", "issue-1", "DEMO-1") is not None

    def test_get_missing(self, sessions):
        assert sessions.get("nope") is None

    def test_update_status(self, sessions):
        sessions.create("s1", "issue-1")
        assert sessions.update_status("s1", "running", worker_id="w1")
        assert sessions.update_status("s1", "failed", error="boom")

        record = sessions.get("s1")
        assert record.status == "failed"
        assert record.worker_id == "w1"
        assert record.error == "boom"

    def test_update_status_unknown_session(self, sessions):
        assert not sessions.update_status("nope", "running")

    def test_update_status_rejects_invalid(self, sessions):
        sessions.create("s1", "issue-1")
        with pytest.raises(ValueError, match="Invalid session status"):
            sessions.update_status("s1", "exploded")

    def test_list_filters_by_status(self, sessions):
        sessions.create("s1", "issue-1")
        sessions.create("s2", "issue-2")
        sessions.update_status("s2", "completed")

        assert [s.session_id for s in sessions.list(status="completed")] == ["s2"]
        assert len(sessions.list()) == 2

    @pytest.mark.parametrize("status,active", [
        ("pending", True),
        ("claimed", True),
        ("running", True),
        ("finalizing", True),
        ("completed", False),
        ("failed", False),
        ("stopped", False),
    ])
    def test_has_active_session(self, sessions, status, active):
        sessions.create("s1", "issue-1")
        sessions.update_status("s1", status)
        assert sessions.has_active_session("issue-1") is active

    def test_has_active_session_without_sessions(self, sessions):
        assert not sessions.has_active_session("issue-1")

    def test_cost_accumulates_per_issue(self, sessions):
        sessions.create("s1", "issue-1")
        sessions.create("s2", "issue-1")
        sessions.record_cost("s1", 1.25, input_tokens=100, output_tokens=50)
        sessions.record_cost("s1", 0.75)
        sessions.record_cost("s2", 2.0)

        record = sessions.get("s1")
        assert record.total_cost_usd == pytest.approx(2.0)
        assert record.input_tokens == 100
        assert sessions.issue_cost("issue-1") == pytest.approx(4.0)
        assert sessions.issue_cost("issue-2") == 0.0

    def test_provider_session_id(self, sessions):
        sessions.create("s1", "issue-1")
        assert sessions.set_provider_session_id("s1", "prov-123")
        assert sessions.get("s1").provider_session_id == "prov-123"

    def test_delete_and_clear(self, sessions):
        sessions.create("s1", "issue-1")
        sessions.create("s2", "issue-2")
        assert sessions.delete("s1")
        assert not sessions.delete("s1")
        assert sessions.clear_all() == 1


class TestProcessingState:
    def test_mark_and_check(self, db):
        store = ProcessingStateStore(db)
        assert not store.is_completed("issue-1", "research")

        store.mark_completed("issue-1", "research", session_id="s1")

        assert store.is_completed("issue-1", "research")
        assert not store.is_completed("issue-1", "backlog-creation")
        assert not store.is_completed("issue-2", "research")

    def test_clear(self, db):
        store = ProcessingStateStore(db)
        store.mark_completed("issue-1", "research")
        store.mark_completed("issue-1", "backlog-creation")

        assert store.clear("issue-1", "research") == 1
        assert store.is_completed("issue-1", "backlog-creation")
        assert store.clear("issue-1") == 1
        assert not store.is_completed("issue-1", "backlog-creation")
