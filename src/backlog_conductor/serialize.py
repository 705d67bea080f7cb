"""JSON-ready dicts for the CLI, MCP tools and the web API."""

from datetime import datetime


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status.value,
        "description": t.description,
        "assignee": t.assignee,
        "effort": t.effort,
        "priority": t.priority.value,
        "prd_id": t.prd_id,
        "epic_id": t.epic_id,
        "blocked_by": t.blocked_by,
        "started_at": _iso(t.started_at),
        "done_at": _iso(t.done_at),
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def node_dict(n) -> dict:
    return {
        "id": n.id,
        "title": n.title,
        "status": n.status.value,
        "kind": n.kind,
        "effort": n.effort,
        "prd_id": n.prd_id,
        "epic_id": n.epic_id,
        "blocked_by": n.blocked_by,
    }


def impact_dict(i) -> dict:
    return {"id": i.id, "direct": i.direct, "chain": i.chain, "score": i.score, "path": i.path}


def agent_dict(a) -> dict:
    return {
        "task_id": a.task_id,
        "status": a.status.value,
        "pid": a.pid,
        "worktree_path": a.worktree_path,
        "branch": a.branch,
        "base_branch": a.base_branch,
        "log_file": a.log_file,
        "timeout": a.timeout,
        "watchdog_timeout": a.watchdog_timeout,
        "spawned_at": _iso(a.spawned_at),
        "started_at": _iso(a.started_at),
        "completed_at": _iso(a.completed_at),
        "reaped_at": _iso(a.reaped_at),
        "killed_at": _iso(a.killed_at),
        "rejected_at": _iso(a.rejected_at),
        "exit_code": a.exit_code,
        "kill_reason": a.kill_reason,
        "reject_reason": a.reject_reason,
        "result_summary": a.result_summary,
        "resumed": a.resumed,
    }


def event_dict(e) -> dict:
    data = {"id": e.id, "event_type": e.event_type, "created_at": _iso(e.created_at)}
    if hasattr(e, "detail"):
        data["detail"] = e.detail
    else:
        data["old_value"] = e.old_value
        data["new_value"] = e.new_value
    return data


def worktree_status_dict(s) -> dict:
    return {
        "task_id": s.task_id,
        "path": s.path,
        "branch": s.branch,
        "exists": s.exists,
        "clean": s.clean,
        "ahead": s.ahead,
        "behind": s.behind,
        "files": s.files,
    }
