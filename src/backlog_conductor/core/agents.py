"""Agent record persistence: one row per task, plus an event log."""

import sqlite3
from collections import deque
from dataclasses import fields
from pathlib import Path

from backlog_conductor.db.engine import format_dt, parse_dt
from backlog_conductor.db.models import Agent, AgentEvent, AgentStatus

_DT_FIELDS = ("spawned_at", "started_at", "completed_at", "reaped_at", "killed_at", "rejected_at")
_COLUMNS = [f.name for f in fields(Agent)]


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        task_id=row["task_id"],
        status=AgentStatus(row["status"]),
        pid=row["pid"],
        worktree_path=row["worktree_path"],
        branch=row["branch"],
        base_branch=row["base_branch"],
        log_file=row["log_file"],
        timeout=row["timeout"],
        watchdog_timeout=row["watchdog_timeout"],
        spawned_at=parse_dt(row["spawned_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        reaped_at=parse_dt(row["reaped_at"]),
        killed_at=parse_dt(row["killed_at"]),
        rejected_at=parse_dt(row["rejected_at"]),
        exit_code=row["exit_code"],
        kill_reason=row["kill_reason"],
        reject_reason=row["reject_reason"],
        result_summary=row["result_summary"],
        resumed=bool(row["resumed"]),
    )


def _agent_values(agent: Agent) -> list:
    values = []
    for name in _COLUMNS:
        value = getattr(agent, name)
        if name in _DT_FIELDS:
            value = format_dt(value)
        elif name == "status":
            value = AgentStatus(value).value
        elif name == "resumed":
            value = int(bool(value))
        values.append(value)
    return values


# ── Queries ──────────────────────────────────────────────────────────────────


def get_agent(db: sqlite3.Connection, task_id: str) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE task_id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_agents(db: sqlite3.Connection, status: AgentStatus | str | None = None) -> list[Agent]:
    """List agent records, newest spawn first."""
    query = "SELECT * FROM agents"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(AgentStatus(status).value)
    query += " ORDER BY spawned_at DESC, task_id"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent(r) for r in rows]


def count_live(db: sqlite3.Connection) -> int:
    row = db.execute(
        "SELECT COUNT(*) AS n FROM agents WHERE status IN (?, ?)",
        (AgentStatus.SPAWNED.value, AgentStatus.RUNNING.value),
    ).fetchone()
    return row["n"]


# ── Writes ───────────────────────────────────────────────────────────────────


def insert_agent(db: sqlite3.Connection, agent: Agent) -> Agent:
    """Insert a new record. Fails if the task already has one."""
    placeholders = ", ".join("?" for _ in _COLUMNS)
    db.execute(
        f"INSERT INTO agents ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
        _agent_values(agent),
    )
    db.commit()
    return get_agent(db, agent.task_id)


def save_agent(db: sqlite3.Connection, agent: Agent) -> Agent:
    """Insert or replace the record for ``agent.task_id``."""
    placeholders = ", ".join("?" for _ in _COLUMNS)
    db.execute(
        f"INSERT OR REPLACE INTO agents ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
        _agent_values(agent),
    )
    db.commit()
    return get_agent(db, agent.task_id)


def delete_agent(db: sqlite3.Connection, task_id: str) -> bool:
    cursor = db.execute("DELETE FROM agents WHERE task_id = ?", (task_id,))
    db.commit()
    return cursor.rowcount > 0


# ── Events ───────────────────────────────────────────────────────────────────


def log_agent_event(db: sqlite3.Connection, task_id: str, event_type: str, detail: str | None = None) -> None:
    db.execute(
        "INSERT INTO agent_events (task_id, event_type, detail) VALUES (?, ?, ?)",
        (task_id, event_type, detail),
    )
    db.commit()


def get_agent_events(db: sqlite3.Connection, task_id: str, limit: int | None = None) -> list[AgentEvent]:
    query = "SELECT * FROM agent_events WHERE task_id = ? ORDER BY id"
    params: list = [task_id]
    if limit:
        query = f"SELECT * FROM ({query} DESC LIMIT ?) ORDER BY id"
        params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [
        AgentEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            detail=r["detail"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


# ── Output ───────────────────────────────────────────────────────────────────


def tail_file(path: str | Path | None, lines: int = 50) -> str:
    """Last ``lines`` lines of a text file. Empty when it does not exist."""
    if not path or not Path(path).exists():
        return ""
    with open(path, errors="replace") as f:
        return "".join(deque(f, maxlen=max(lines, 0)))


def tail_log(db: sqlite3.Connection, task_id: str, lines: int = 50) -> str | None:
    """Tail of an agent's log. None when the task has no agent record."""
    agent = get_agent(db, task_id)
    if agent is None:
        return None
    return tail_file(agent.log_file, lines)
