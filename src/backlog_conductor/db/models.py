"""Data models for the backlog conductor."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    BLOCKED = "Blocked"
    DONE = "Done"
    CANCELLED = "Cancelled"
    AUTO_DONE = "Auto-Done"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_done(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.AUTO_DONE)


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.AUTO_DONE, TaskStatus.CANCELLED})


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class AgentStatus(str, Enum):
    SPAWNED = "spawned"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    KILLED = "killed"
    REJECTED = "rejected"
    REAPED = "reaped"

    @property
    def is_live(self) -> bool:
        return self in (AgentStatus.SPAWNED, AgentStatus.RUNNING)


class MergeStrategy(str, Enum):
    SQUASH = "squash"
    MERGE = "merge"
    REBASE = "rebase"


class Branching(str, Enum):
    FLAT = "flat"
    PRD = "prd"
    EPIC = "epic"


class SquashLevel(str, Enum):
    TASK = "task"
    EPIC = "epic"
    PRD = "prd"


@dataclass
class Prd:
    id: str
    title: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Epic:
    id: str
    prd_id: str | None = None
    title: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    assignee: str | None = None
    effort: str | None = None
    priority: Priority = Priority.NORMAL
    prd_id: str | None = None
    epic_id: str | None = None
    parent: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    done_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Agent:
    task_id: str
    status: AgentStatus = AgentStatus.SPAWNED
    pid: int | None = None
    worktree_path: str | None = None
    branch: str | None = None
    base_branch: str | None = None
    log_file: str | None = None
    timeout: int | None = None
    watchdog_timeout: int | None = None
    spawned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    reaped_at: datetime | None = None
    killed_at: datetime | None = None
    rejected_at: datetime | None = None
    exit_code: int | None = None
    kill_reason: str | None = None
    reject_reason: str | None = None
    result_summary: str | None = None
    resumed: bool = False


@dataclass
class AgentEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    detail: str | None = None
    created_at: datetime | None = None
