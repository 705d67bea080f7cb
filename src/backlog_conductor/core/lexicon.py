"""Status and priority vocabulary, resolved at the I/O boundary."""

import re

from backlog_conductor.db.models import Priority, TaskStatus

# Keys are lowercase with spaces, dashes and underscores removed.
STATUS_ALIASES: dict[str, TaskStatus] = {
    "notstarted": TaskStatus.NOT_STARTED,
    "todo": TaskStatus.NOT_STARTED,
    "pending": TaskStatus.NOT_STARTED,
    "new": TaskStatus.NOT_STARTED,
    "inprogress": TaskStatus.IN_PROGRESS,
    "wip": TaskStatus.IN_PROGRESS,
    "started": TaskStatus.IN_PROGRESS,
    "working": TaskStatus.IN_PROGRESS,
    "blocked": TaskStatus.BLOCKED,
    "stuck": TaskStatus.BLOCKED,
    "autodone": TaskStatus.AUTO_DONE,
    "done": TaskStatus.DONE,
    "complete": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
    "finished": TaskStatus.DONE,
    "cancelled": TaskStatus.CANCELLED,
    "canceled": TaskStatus.CANCELLED,
    "cancel": TaskStatus.CANCELLED,
    "dropped": TaskStatus.CANCELLED,
    "abandoned": TaskStatus.CANCELLED,
}

STATUS_SYMBOLS = {
    TaskStatus.NOT_STARTED: "○",
    TaskStatus.IN_PROGRESS: "●",
    TaskStatus.BLOCKED: "✗",
    TaskStatus.DONE: "✓",
    TaskStatus.AUTO_DONE: "✓",
    TaskStatus.CANCELLED: "⊘",
}


def _key(raw: str) -> str:
    return re.sub(r"[\s_-]+", "", raw.strip().lower())


def normalize_status(raw: str | TaskStatus | None) -> TaskStatus | None:
    """Resolve a raw status string (or alias) to a TaskStatus. None if unknown."""
    if raw is None:
        return None
    if isinstance(raw, TaskStatus):
        return raw
    return STATUS_ALIASES.get(_key(raw))


def require_status(raw: str | TaskStatus | None) -> TaskStatus:
    """Like normalize_status, but raises ValueError for unknown input."""
    status = normalize_status(raw)
    if status is None:
        valid = ", ".join(s.value for s in TaskStatus)
        raise ValueError(f"Invalid status '{raw}'. Valid: {valid}")
    return status


def normalize_priority(raw: str | Priority | None) -> Priority:
    if raw is None or raw == "":
        return Priority.NORMAL
    if isinstance(raw, Priority):
        return raw
    try:
        return Priority(raw.strip().lower())
    except ValueError as e:
        valid = ", ".join(p.value for p in Priority)
        raise ValueError(f"Invalid priority '{raw}'. Valid: {valid}") from e


def status_symbol(status: TaskStatus) -> str:
    return STATUS_SYMBOLS.get(status, "?")
