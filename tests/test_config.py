"""Tests for environment-driven configuration."""

from pathlib import Path

import pytest

from backlog_conductor.config import Config
from backlog_conductor.core.errors import ConfigError
from backlog_conductor.db.models import Branching, MergeStrategy, SquashLevel

_ENV_NAMES = [
    "BC_DB_PATH", "BC_REPO_PATH", "BC_AGENT_DIR", "BC_MAIN_BRANCH", "BC_AGENT_COMMAND",
    "BC_AGENT_MODEL", "BC_BRANCHING", "BC_MERGE_TO_MAIN", "BC_SQUASH_LEVEL", "BC_EFFORT_MAP",
    "BC_DEFAULT_DURATION", "BC_AGENT_TIMEOUT", "BC_MAX_PARALLEL", "BC_KILL_GRACE",
    "BC_USE_WORKTREES", "BC_AUTO_COMMIT", "SLACK_BOT_TOKEN",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


class TestFromEnv:
    def test_defaults(self):
        cfg = Config.from_env()
        assert cfg.main_branch == "main"
        assert cfg.branching == Branching.FLAT
        assert cfg.squash_level == SquashLevel.PRD
        assert cfg.use_worktrees is True
        assert cfg.slack_bot_token is None
        assert cfg.worktree_base == cfg.repo_path / ".worktrees"

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BC_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("BC_REPO_PATH", str(tmp_path))
        monkeypatch.setenv("BC_BRANCHING", "EPIC")
        monkeypatch.setenv("BC_MERGE_TO_MAIN", "rebase")
        monkeypatch.setenv("BC_AGENT_TIMEOUT", "120")
        monkeypatch.setenv("BC_KILL_GRACE", "0.5")
        monkeypatch.setenv("BC_USE_WORKTREES", "no")
        monkeypatch.setenv("BC_AUTO_COMMIT", "true")
        monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")

        cfg = Config.from_env()
        assert cfg.db_path == tmp_path / "x.db"
        assert cfg.repo_path == Path(tmp_path)
        assert cfg.branching == Branching.EPIC
        assert cfg.merge_to_main == MergeStrategy.REBASE
        assert cfg.agent_timeout == 120
        assert cfg.kill_grace == 0.5
        assert cfg.use_worktrees is False
        assert cfg.auto_commit is True
        assert cfg.slack_bot_token == "xoxb-test"

    @pytest.mark.parametrize(
        "name,value",
        [
            ("BC_AGENT_TIMEOUT", "soon"),
            ("BC_MAX_PARALLEL", "-1"),
            ("BC_KILL_GRACE", "fast"),
            ("BC_BRANCHING", "nested"),
            ("BC_SQUASH_LEVEL", "main"),
            ("BC_USE_WORKTREES", "maybe"),
            ("BC_EFFORT_MAP", "M"),
            ("BC_DEFAULT_DURATION", "a while"),
        ],
    )
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigError):
            Config.from_env()


class TestEffort:
    def test_default_sizes(self):
        cfg = Config()
        assert cfg.effort.effort_map["M"] == 1.0
        assert cfg.effort.default_duration == 1.0

    def test_custom_map(self):
        cfg = Config(effort_map="m=4h,XXL=16h",default_duration="30m")
        assert cfg.effort.effort_map["M"] == 4.0
        assert cfg.effort.effort_map["XXL"] == 16.0
        assert cfg.effort.effort_map["S"] == 0.5
        assert cfg.effort.default_duration == 0.5

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            Config(agent_timeout=-5)
