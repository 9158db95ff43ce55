"""Tests for governor.models."""

from governor.models import ACTION_WORK_TYPES, Decision, Issue, QueuedWork


class TestDecision:
    def test_none_is_not_actionable(self):
        assert not Decision(action="none", reason="terminal status: Accepted").is_actionable

    def test_actions_are_actionable(self):
        for action in ACTION_WORK_TYPES:
            assert Decision(action=action, reason="x").is_actionable


class TestIssue:
    def test_dict_form_is_json_friendly(self):
        issue = Issue(id="i1", identifier="DEMO-1", title="t", status="Backlog",
                      labels=frozenset({"ui", "bug"}), project="Demo")
        data = issue.to_dict()
        assert data["labels"] == ["bug", "ui"]
        assert Issue.from_dict(data) == issue

    def test_from_dict_defaults(self):
        issue = Issue.from_dict({"id": "i1", "identifier": "DEMO-1", "status": "Backlog"})
        assert issue.title == ""
        assert issue.labels == frozenset()
        assert issue.project is None


class TestQueuedWork:
    def test_to_dict_drops_unset_fields(self):
        work = QueuedWork(session_id="s1", issue_id="i1", issue_identifier="DEMO-1",
                          priority=3, queued_at=1.0, work_type="qa")
        data = work.to_dict()
        assert "prompt" not in data
        assert "project_name" not in data
        assert QueuedWork.from_dict(data) == work
