"""Tests for governor configuration loading."""

import logging
import math
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from governor.config import (
    GovernorConfig,
    build_governor_config,
    get_config_path,
    get_database_path,
    get_state_dir,
    load_governor_config,
    setup_logging,
)
from governor.exceptions import ConfigError, GovernorError


class TestBuildGovernorConfig:
    def test_defaults(self):
        config = build_governor_config()
        assert config == GovernorConfig()
        assert config.scan_interval_seconds == 60
        assert config.max_concurrent_dispatches == 3
        assert not config.enable_auto_research
        assert not config.enable_auto_backlog_creation
        assert config.enable_auto_development
        assert config.enable_auto_qa
        assert config.enable_auto_acceptance
        assert config.human_response_timeout_seconds == 4 * 60 * 60
        assert config.qa_cooldown_seconds == 300
        assert math.isinf(config.touchpoints.escalation_alert_timeout_seconds)

    def test_overrides(self):
        config = build_governor_config({
            "projects": ["Social", "Agent"],
            "max_concurrent_dispatches": 5,
            "enable_auto_research": True,
        })
        assert config.projects == ("Social", "Agent")
        assert config.max_concurrent_dispatches == 5
        assert config.enable_auto_research

    def test_review_timeout_follows_human_timeout(self):
        config = build_governor_config({"human_response_timeout_seconds": 7200})
        assert config.touchpoints.review_request_timeout_seconds == 7200

    def test_explicit_touchpoint_timeouts(self):
        config = build_governor_config({
            "touchpoints": {
                "review_request_timeout_seconds": 60,
                "escalation_alert_timeout_seconds": "never",
            },
        })
        assert config.touchpoints.review_request_timeout_seconds == 60
        assert config.touchpoints.decomposition_proposal_timeout_seconds == 2 * 60 * 60
        assert math.isinf(config.touchpoints.escalation_alert_timeout_seconds)

    def test_custom_statuses(self):
        config = build_governor_config({"statuses": {"backlog": "Todo", "terminal": "Done"}})
        assert config.statuses.backlog == "Todo"
        assert config.statuses.finished == "Finished"
        assert config.statuses.is_terminal("Done")
        assert not config.statuses.is_terminal("Accepted")

    @pytest.mark.parametrize("data,message", [
        ({"bogus": 1}, "Unknown governor settings"),
        ({"projects": "Demo"}, "projects"),
        ({"max_concurrent_dispatches": 0}, "max_concurrent_dispatches"),
        ({"scan_interval_seconds": 0}, "scan_interval_seconds"),
        ({"poll_interval_seconds": -5}, "poll_interval_seconds"),
        ({"touchpoints": {"review_request_timeout_seconds": "soon"}}, "Invalid duration"),
    ])
    def test_invalid_settings(self, data, message):
        with pytest.raises(ConfigError, match=message):
            build_governor_config(data)

    def test_top_of_funnel_defaults(self):
        funnel = build_governor_config().top_of_funnel
        assert funnel.icebox_research_delay_seconds == 60 * 60
        assert funnel.min_researched_description_length == 200
        assert "## Acceptance Criteria" in funnel.researched_headers
        assert funnel.research_request_labels == ("Needs Research",)

    def test_top_of_funnel_overrides(self):
        config = build_governor_config({
            "top_of_funnel": {
                "icebox_research_delay_seconds": 0,
                "research_request_labels": "research",
                "researched_headers": ["## Scope"],
            },
        })
        assert config.top_of_funnel.icebox_research_delay_seconds == 0
        assert config.top_of_funnel.research_request_labels == ("research",)
        assert config.top_of_funnel.researched_headers == ("## Scope",)
        assert config.top_of_funnel.min_researched_description_length == 200

    def test_negative_description_length_rejected(self):
        with pytest.raises(ConfigError, match="min_researched_description_length"):
            build_governor_config({"top_of_funnel": {"min_researched_description_length": -1}})

    def test_config_error_is_governor_error(self):
        with pytest.raises(GovernorError):
            build_governor_config({"bogus": True})


class TestPaths:
    def test_env_override(self, temp_dir):
        with patch.dict(os.environ, {"GOVERNOR_DIR": str(temp_dir)}):
            assert get_state_dir() == temp_dir
            assert get_config_path() == temp_dir / "governor.yaml"
            assert get_database_path() == temp_dir / "state.db"

    def test_default_is_cwd(self, temp_dir, monkeypatch):
        monkeypatch.delenv("GOVERNOR_DIR", raising=False)
        monkeypatch.chdir(temp_dir)
        assert get_state_dir() == Path.cwd() / ".governor"


class TestLoadGovernorConfig:
    def test_missing_file_gives_defaults(self, temp_dir):
        assert load_governor_config(temp_dir / "missing.yaml") == GovernorConfig()

    def test_loads_yaml(self, temp_dir):
        path = temp_dir / "governor.yaml"
        path.write_text("""
projects:
  - Social
  - Agent
scan_interval_seconds: 30
enable_auto_qa: false
touchpoints:
  decomposition_proposal_timeout_seconds: 600
""")
        config = load_governor_config(path)
        assert config.projects == ("Social", "Agent")
        assert config.scan_interval_seconds == 30
        assert not config.enable_auto_qa
        assert config.touchpoints.decomposition_proposal_timeout_seconds == 600

    def test_nested_under_governor_key(self, temp_dir):
        path = temp_dir / "governor.yaml"
        path.write_text("governor:\n  projects: [Demo]\n")
        assert load_governor_config(path).projects == ("Demo",)

    def test_empty_file(self, temp_dir):
        path = temp_dir / "governor.yaml"
        path.write_text("")
        assert load_governor_config(path) == GovernorConfig()

    def test_invalid_yaml(self, temp_dir):
        path = temp_dir / "governor.yaml"
        path.write_text("projects: [unclosed\n")
        with pytest.raises(ConfigError) as exc_info:
            load_governor_config(path)
        assert exc_info.value.path == str(path)

    def test_non_mapping(self, temp_dir):
        path = temp_dir / "governor.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_governor_config(path)

    def test_invalid_value_carries_path(self, temp_dir):
        path = temp_dir / "governor.yaml"
        path.write_text("max_concurrent_dispatches: 0\n")
        with pytest.raises(ConfigError) as exc_info:
            load_governor_config(path)
        assert exc_info.value.path == str(path)

    def test_uses_state_dir_by_default(self, temp_dir):
        (temp_dir / "governor.yaml").write_text("projects: [FromEnv]\n")
        with patch.dict(os.environ, {"GOVERNOR_DIR": str(temp_dir)}):
            assert load_governor_config().projects == ("FromEnv",)


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_handlers(self):
        logger = logging.getLogger("governor")
        handlers = list(logger.handlers)
        level = logger.level
        yield
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers = handlers
        logger.setLevel(level)

    def test_writes_dated_log_file(self, temp_dir):
        log_file = setup_logging(logs_dir=temp_dir / "logs")

        logging.getLogger("governor.scheduler").info("scan started")
        for handler in logging.getLogger("governor").handlers:
            handler.flush()

        assert log_file.parent == temp_dir / "logs"
        assert log_file.name.startswith("governor-")
        assert "scan started" in log_file.read_text()

    def test_debug_level(self, temp_dir):
        setup_logging(debug=True, logs_dir=temp_dir)
        assert logging.getLogger("governor").level == logging.DEBUG

    def test_handler_added_once(self, temp_dir):
        logger = logging.getLogger("governor")
        before = len(logger.handlers)
        setup_logging(logs_dir=temp_dir)
        setup_logging(logs_dir=temp_dir)
        assert len(logger.handlers) == before + 1
