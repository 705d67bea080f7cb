"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from backlog_conductor.core.errors import ConfigError
from backlog_conductor.core.scheduling import EffortConfig
from backlog_conductor.db.models import Branching, MergeStrategy, SquashLevel

DEFAULT_EFFORT_MAP = "S=0.5h,M=1h,L=2h,XL=4h"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".backlog_conductor" / "bc.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    main_branch: str = "main"
    worktree_dir: str = ".worktrees"
    agent_dir: Path = field(default_factory=lambda: Path.home() / ".backlog_conductor" / "agents")
    agent_command: str = "claude -p --verbose --output-format stream-json"
    agent_model: str | None = "sonnet"
    agent_timeout: int = 3600
    watchdog_timeout: int = 300
    kill_grace: float = 5.0
    max_parallel: int = 6
    use_worktrees: bool = True
    branching: Branching = Branching.FLAT
    merge_to_epic: MergeStrategy = MergeStrategy.MERGE
    merge_to_prd: MergeStrategy = MergeStrategy.SQUASH
    merge_to_main: MergeStrategy = MergeStrategy.SQUASH
    squash_level: SquashLevel = SquashLevel.PRD
    auto_commit: bool = False
    default_duration: str = "1h"
    effort_map: str = DEFAULT_EFFORT_MAP
    log_level: str = "WARNING"
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    def __post_init__(self):
        self.db_path = Path(self.db_path)
        self.repo_path = Path(self.repo_path)
        self.agent_dir = Path(self.agent_dir)
        self.branching = _enum(Branching, self.branching, "branching")
        self.merge_to_epic = _enum(MergeStrategy, self.merge_to_epic, "merge_to_epic")
        self.merge_to_prd = _enum(MergeStrategy, self.merge_to_prd, "merge_to_prd")
        self.merge_to_main = _enum(MergeStrategy, self.merge_to_main, "merge_to_main")
        self.squash_level = _enum(SquashLevel, self.squash_level, "squash_level")

        if self.agent_timeout < 0:
            raise ConfigError("agent_timeout must be >= 0 (0 disables it)")
        if self.watchdog_timeout < 0:
            raise ConfigError("watchdog_timeout must be >= 0 (0 disables it)")
        if self.max_parallel < 0:
            raise ConfigError("max_parallel must be >= 0 (0 means unlimited)")
        if self.kill_grace < 0:
            raise ConfigError("kill_grace must be >= 0")
        if not self.main_branch:
            raise ConfigError("main_branch must not be empty")
        if not self.agent_command.strip():
            raise ConfigError("agent_command must not be empty")

        try:
            self.effort = EffortConfig.from_strings(self.default_duration, self.effort_map)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    @classmethod
    def from_env(cls) -> "Config":
        kwargs: dict = {}

        if db := os.environ.get("BC_DB_PATH"):
            kwargs["db_path"] = Path(db)

        if repo := os.environ.get("BC_REPO_PATH"):
            kwargs["repo_path"] = Path(repo)

        if agent_dir := os.environ.get("BC_AGENT_DIR"):
            kwargs["agent_dir"] = Path(agent_dir)

        for env_name, key in (
            ("BC_MAIN_BRANCH", "main_branch"),
            ("BC_WORKTREE_DIR", "worktree_dir"),
            ("BC_AGENT_COMMAND", "agent_command"),
            ("BC_AGENT_MODEL", "agent_model"),
            ("BC_BRANCHING", "branching"),
            ("BC_MERGE_TO_EPIC", "merge_to_epic"),
            ("BC_MERGE_TO_PRD", "merge_to_prd"),
            ("BC_MERGE_TO_MAIN", "merge_to_main"),
            ("BC_SQUASH_LEVEL", "squash_level"),
            ("BC_DEFAULT_DURATION", "default_duration"),
            ("BC_EFFORT_MAP", "effort_map"),
            ("BC_LOG_LEVEL", "log_level"),
            ("BC_SLACK_CHANNEL", "slack_channel"),
        ):
            if value := os.environ.get(env_name):
                kwargs[key] = value

        for env_name, key in (
            ("BC_AGENT_TIMEOUT", "agent_timeout"),
            ("BC_WATCHDOG_TIMEOUT", "watchdog_timeout"),
            ("BC_MAX_PARALLEL", "max_parallel"),
        ):
            if value := os.environ.get(env_name):
                kwargs[key] = _int(env_name, value)

        if grace := os.environ.get("BC_KILL_GRACE"):
            try:
                kwargs["kill_grace"] = float(grace)
            except ValueError as e:
                raise ConfigError(f"Invalid number for BC_KILL_GRACE: {grace}") from e

        if (flag := os.environ.get("BC_USE_WORKTREES")) is not None:
            kwargs["use_worktrees"] = _bool("BC_USE_WORKTREES", flag)

        if (flag := os.environ.get("BC_AUTO_COMMIT")) is not None:
            kwargs["auto_commit"] = _bool("BC_AUTO_COMMIT", flag)

        kwargs["slack_bot_token"] = os.environ.get("SLACK_BOT_TOKEN")

        return cls(**kwargs)

    @property
    def worktree_base(self) -> Path:
        return self.repo_path / self.worktree_dir


def get_config() -> Config:
    return Config.from_env()


def _enum(enum_cls, value, name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as e:
        valid = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"Invalid {name} '{value}'. Valid: {valid}") from e


def _int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(f"Invalid integer for {name}: {value}") from e


def _bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {value}")
