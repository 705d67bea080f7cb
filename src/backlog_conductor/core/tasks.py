"""Backlog store: PRDs, epics, tasks and their blocking dependencies."""

import re
import sqlite3
from datetime import datetime
from pathlib import Path

from backlog_conductor.core.lexicon import normalize_priority, require_status
from backlog_conductor.db.engine import format_dt, get_db, parse_dt, utc_now
from backlog_conductor.db.models import Epic, Prd, Task, TaskEvent, TaskStatus


def _next_task_id(db: sqlite3.Connection) -> str:
    """Generate the next sequential task ID (T001, T002, ...)."""
    rows = db.execute("SELECT id FROM tasks WHERE id GLOB 'T[0-9]*'").fetchall()
    highest = 0
    for row in rows:
        m = re.fullmatch(r"T(\d+)", row["id"])
        if m:
            highest = max(highest, int(m.group(1)))
    return f"T{highest + 1:03d}"


# ── PRDs and Epics ───────────────────────────────────────────────────────────


def create_prd(db: sqlite3.Connection, prd_id: str, title: str = "") -> Prd:
    """Create a PRD."""
    db.execute("INSERT INTO prds (id, title) VALUES (?, ?)", (prd_id, title))
    db.commit()
    return get_prd(db, prd_id)


def get_prd(db: sqlite3.Connection, prd_id: str) -> Prd | None:
    row = db.execute("SELECT * FROM prds WHERE id = ?", (prd_id,)).fetchone()
    if not row:
        return None
    return Prd(
        id=row["id"],
        title=row["title"],
        status=require_status(row["status"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )


def create_epic(
    db: sqlite3.Connection,
    epic_id: str,
    title: str = "",
    prd_id: str | None = None,
) -> Epic:
    """Create an epic, optionally under a PRD."""
    if prd_id and not get_prd(db, prd_id):
        raise ValueError(f"PRD not found: {prd_id}")
    db.execute(
        "INSERT INTO epics (id, prd_id, title) VALUES (?, ?, ?)",
        (epic_id, prd_id, title),
    )
    db.commit()
    return get_epic(db, epic_id)


def get_epic(db: sqlite3.Connection, epic_id: str) -> Epic | None:
    row = db.execute("SELECT * FROM epics WHERE id = ?", (epic_id,)).fetchone()
    if not row:
        return None
    return _row_to_epic(row)


def list_epics(db: sqlite3.Connection, prd_id: str | None = None) -> list[Epic]:
    if prd_id:
        rows = db.execute(
            "SELECT * FROM epics WHERE prd_id = ? ORDER BY id", (prd_id,)
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM epics ORDER BY id").fetchall()
    return [_row_to_epic(r) for r in rows]


def update_epic_status(db: sqlite3.Connection, epic_id: str, status: TaskStatus) -> Epic | None:
    db.execute(
        "UPDATE epics SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (status.value, epic_id),
    )
    db.commit()
    return get_epic(db, epic_id)


def update_prd_status(db: sqlite3.Connection, prd_id: str, status: TaskStatus) -> Prd | None:
    db.execute(
        "UPDATE prds SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (status.value, prd_id),
    )
    db.commit()
    return get_prd(db, prd_id)


# ── Tasks ────────────────────────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    title: str,
    task_id: str | None = None,
    description: str = "",
    effort: str | None = None,
    priority: str = "normal",
    prd_id: str | None = None,
    epic_id: str | None = None,
    assignee: str | None = None,
    blocked_by: list[str] | None = None,
    status: str | TaskStatus = TaskStatus.NOT_STARTED,
    started_at: datetime | None = None,
    done_at: datetime | None = None,
) -> Task:
    """Create a new task. Blocker ids may reference tasks or epics not yet known."""
    task_id = task_id or _next_task_id(db)
    blockers = list(dict.fromkeys(blocked_by or []))
    if task_id in blockers:
        raise ValueError(f"Task {task_id} cannot block itself")
    status = require_status(status)
    prio = normalize_priority(priority)

    if epic_id and not prd_id:
        epic = get_epic(db, epic_id)
        if epic:
            prd_id = epic.prd_id

    parent = "/".join(p for p in (prd_id, epic_id) if p) or None

    db.execute(
        """INSERT INTO tasks (id, title, description, status, assignee, effort, priority,
                              prd_id, epic_id, parent, started_at, done_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id, title, description, status.value, assignee, effort, prio.value,
            prd_id, epic_id, parent, format_dt(started_at), format_dt(done_at),
        ),
    )

    for position, dep_id in enumerate(blockers):
        db.execute(
            "INSERT INTO task_dependencies (task_id, blocked_by_id, position) VALUES (?, ?, ?)",
            (task_id, dep_id, position),
        )

    _log_event(db, task_id, "created", None, status.value)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its blockers."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.blocked_by = _blockers(db, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    prd_id: str | None = None,
    epic_id: str | None = None,
    status: str | TaskStatus | None = None,
) -> list[Task]:
    """List tasks with optional filters, in creation order."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if prd_id:
        query += " AND prd_id = ?"
        params.append(prd_id)

    if epic_id:
        query += " AND epic_id = ?"
        params.append(epic_id)

    if status:
        query += " AND status = ?"
        params.append(require_status(status).value)

    query += " ORDER BY created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()

    deps: dict[str, list[str]] = {}
    for d in db.execute(
        "SELECT task_id, blocked_by_id FROM task_dependencies ORDER BY position, rowid"
    ).fetchall():
        deps.setdefault(d["task_id"], []).append(d["blocked_by_id"])

    tasks = []
    for row in rows:
        task = _row_to_task(row)
        task.blocked_by = deps.get(task.id, [])
        tasks.append(task)
    return tasks


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str | TaskStatus,
    started_at: datetime | None = None,
    done_at: datetime | None = None,
    clear_dates: bool = False,
) -> Task | None:
    """Update a task's status. Returns the updated task.

    Entering In Progress stamps ``started_at`` and entering Done stamps
    ``done_at`` unless explicit values are given. ``clear_dates`` wipes both,
    which is what a reset back to Not Started wants.
    """
    task = get_task(db, task_id)
    if not task:
        return None

    status = require_status(status)
    old_status = task.status
    updates: dict = {"status": status.value}

    if clear_dates:
        updates["started_at"] = None
        updates["done_at"] = None
    else:
        if started_at is not None:
            updates["started_at"] = format_dt(started_at)
        elif status == TaskStatus.IN_PROGRESS and task.started_at is None:
            updates["started_at"] = format_dt(utc_now())

        if done_at is not None:
            updates["done_at"] = format_dt(done_at)
        elif status.is_done and not old_status.is_done:
            updates["done_at"] = format_dt(utc_now())

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task_id]

    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    _log_event(db, task_id, "status_changed", old_status.value, status.value)
    db.commit()
    return get_task(db, task_id)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task and any edges pointing at it."""
    if not get_task(db, task_id):
        return False
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? OR blocked_by_id = ?",
        (task_id, task_id),
    )
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    blocked_by_id: str,
) -> Task | None:
    """Make ``task_id`` wait for ``blocked_by_id``."""
    task = get_task(db, task_id)
    if not task:
        return None
    if blocked_by_id == task_id:
        raise ValueError(f"Task {task_id} cannot block itself")
    if not get_task(db, blocked_by_id) and not get_epic(db, blocked_by_id):
        raise ValueError(f"Blocker not found: {blocked_by_id}")
    if blocked_by_id in task.blocked_by:
        return task
    db.execute(
        "INSERT INTO task_dependencies (task_id, blocked_by_id, position) VALUES (?, ?, ?)",
        (task_id, blocked_by_id, len(task.blocked_by)),
    )
    _log_event(db, task_id, "dependency_added", None, blocked_by_id)
    db.commit()
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    blocked_by_id: str,
) -> Task | None:
    """Remove a blocker from a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND blocked_by_id = ?",
        (task_id, blocked_by_id),
    )
    _log_event(db, task_id, "dependency_removed", blocked_by_id, None)
    db.commit()
    return get_task(db, task_id)


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _blockers(db: sqlite3.Connection, task_id: str) -> list[str]:
    rows = db.execute(
        "SELECT blocked_by_id FROM task_dependencies WHERE task_id = ? ORDER BY position, rowid",
        (task_id,),
    ).fetchall()
    return [r["blocked_by_id"] for r in rows]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        status=require_status(row["status"]),
        assignee=row["assignee"],
        effort=row["effort"],
        priority=normalize_priority(row["priority"]),
        prd_id=row["prd_id"],
        epic_id=row["epic_id"],
        parent=row["parent"],
        started_at=parse_dt(row["started_at"]),
        done_at=parse_dt(row["done_at"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )


def _row_to_epic(row: sqlite3.Row) -> Epic:
    return Epic(
        id=row["id"],
        prd_id=row["prd_id"],
        title=row["title"],
        status=require_status(row["status"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )


# ── Collaborator ─────────────────────────────────────────────────────────────


class SqliteBacklog:
    """Backlog store collaborator backed by the SQLite tables above.

    Each call opens its own connection, so one instance can be shared with
    the watchdog threads.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def list_tasks(self, prd_id: str | None = None) -> list[Task]:
        with get_db(self.db_path) as db:
            return list_tasks(db, prd_id=prd_id)

    def get_task(self, task_id: str) -> Task | None:
        with get_db(self.db_path) as db:
            return get_task(db, task_id)

    def list_epics(self) -> list[Epic]:
        with get_db(self.db_path) as db:
            return list_epics(db)

    def update_task_status(self, task_id: str, status: TaskStatus, **fields) -> Task | None:
        with get_db(self.db_path) as db:
            return update_task_status(db, task_id, status, **fields)

    def update_epic_status(self, epic_id: str, status: TaskStatus) -> Epic | None:
        with get_db(self.db_path) as db:
            return update_epic_status(db, epic_id, status)

    def update_prd_status(self, prd_id: str, status: TaskStatus) -> Prd | None:
        with get_db(self.db_path) as db:
            return update_prd_status(db, prd_id, status)
