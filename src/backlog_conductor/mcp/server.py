"""MCP server exposing the backlog, graph, schedule and agent tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from backlog_conductor.config import Config, get_config
from backlog_conductor.core import agents as agents_mod
from backlog_conductor.core import tasks as tasks_mod
from backlog_conductor.core import worktrees as worktrees_mod
from backlog_conductor.core.conductor import Conductor
from backlog_conductor.core.errors import ConductorError
from backlog_conductor.db.engine import init_db
from backlog_conductor.integrations.git import GitError
from backlog_conductor.serialize import agent_dict, event_dict, impact_dict, node_dict, task_dict, worktree_status_dict


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    conductor: Conductor


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the DB and the conductor on startup; stop supervising on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    conductor = Conductor(config)

    try:
        yield AppContext(db=db, config=config, conductor=conductor)
    finally:
        conductor.shutdown()
        db.close()


mcp = FastMCP("backlog-conductor", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _error(e: Exception) -> dict:
    if isinstance(e, ConductorError):
        return e.to_dict()
    return {"error": str(e)}


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    task_id: str | None = None,
    description: str = "",
    effort: str | None = None,
    priority: str = "normal",
    prd_id: str | None = None,
    epic_id: str | None = None,
    blocked_by: list[str] | None = None,
) -> dict:
    """Create a task. Effort is a duration (2h, 30m) or a size (S, M, L, XL)."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db, title, task_id=task_id, description=description, effort=effort,
            priority=priority, prd_id=prd_id, epic_id=epic_id, blocked_by=blocked_by,
        )
    except (ValueError, sqlite3.IntegrityError) as e:
        return _error(e)
    return task_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    prd_id: str | None = None,
    epic_id: str | None = None,
    status: str | None = None,
) -> list[dict]:
    """List tasks, optionally filtered by PRD, epic and status."""
    app = _ctx(ctx)
    try:
        tasks = tasks_mod.list_tasks(app.db, prd_id=prd_id, epic_id=epic_id, status=status)
    except ValueError as e:
        return [_error(e)]
    return [task_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its blockers and its agent, if any."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = task_dict(task)
    agent = app.conductor.status(task_id)
    result["agent"] = agent_dict(agent) if agent else None
    return result


@mcp.tool()
def update_task_status(ctx: Context, task_id: str, status: str) -> dict:
    """Set a task's status. Aliases like todo, wip and done are accepted."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.update_task_status(app.db, task_id, status)
    except ValueError as e:
        return _error(e)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return task_dict(task)


@mcp.tool()
def add_dependency(ctx: Context, task_id: str, blocked_by_id: str) -> dict:
    """Make task_id wait for blocked_by_id (a task or an epic)."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.add_dependency(app.db, task_id, blocked_by_id)
    except ValueError as e:
        return _error(e)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return task_dict(task)


@mcp.tool()
def remove_dependency(ctx: Context, task_id: str, blocked_by_id: str) -> dict:
    """Remove a blocker from a task."""
    app = _ctx(ctx)
    task = tasks_mod.remove_dependency(app.db, task_id, blocked_by_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return task_dict(task)


# ── Graph and Schedule Tools ──────────────────────────────────────────────────


@mcp.tool()
def get_ready_tasks(ctx: Context, prd_id: str | None = None) -> list[dict]:
    """Tasks whose blockers are all resolved and that have not started."""
    return [node_dict(n) for n in _ctx(ctx).conductor.ready_tasks(prd_id)]


@mcp.tool()
def rank_bottlenecks(ctx: Context, limit: int = 10, include_done: bool = False) -> list[dict]:
    """Tasks ranked by direct dependents times the longest chain they hold up."""
    return [impact_dict(i) for i in _ctx(ctx).conductor.bottlenecks(limit, include_done)]


@mcp.tool()
def critical_path(ctx: Context, task_id: str) -> dict:
    """Longest chain of dependents starting at a task."""
    try:
        return _ctx(ctx).conductor.critical_path(task_id)
    except ConductorError as e:
        return _error(e)


@mcp.tool()
def detect_cycles(ctx: Context) -> dict:
    """Dependency cycles in the backlog, each as a closed path."""
    cycles = _ctx(ctx).conductor.cycles()
    return {"has_cycles": bool(cycles), "cycles": cycles}


@mcp.tool()
def gantt(ctx: Context, prd_id: str | None = None, display_cap_hours: float | None = None) -> dict:
    """Real schedule and Gantt metrics for a PRD, or the whole backlog."""
    return _ctx(ctx).conductor.gantt(prd_id, display_cap_hours=display_cap_hours)


# ── Agent Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def spawn_agent(
    ctx: Context,
    task_id: str,
    timeout: int | None = None,
    resume: bool = False,
    worktree: bool | None = None,
    instructions: str = "",
) -> dict:
    """Spawn a coding agent on a ready task, supervised by this server.

    Fails with a structured error (reason, next_steps) when the task is
    blocked, in a cycle, already has an agent, or the repo is not clean.
    """
    try:
        agent = _ctx(ctx).conductor.spawn(
            task_id, timeout=timeout, resume=resume, worktree=worktree, instructions=instructions
        )
    except (ConductorError, GitError) as e:
        return _error(e)
    return agent_dict(agent)


@mcp.tool()
def agent_status(ctx: Context, task_id: str) -> dict:
    """Agent status reconciled with its process, plus the recent output."""
    app = _ctx(ctx)
    agent = app.conductor.status(task_id)
    if not agent:
        return {"error": f"No agent for task: {task_id}"}
    result = agent_dict(agent)
    result["log_tail"] = app.conductor.log_tail(task_id, 20)
    return result


@mcp.tool()
def list_agents(ctx: Context, status: str | None = None) -> list[dict]:
    """List agents, optionally filtered by status."""
    try:
        agents = _ctx(ctx).conductor.list_agents(status)
    except ValueError as e:
        return [_error(e)]
    return [agent_dict(a) for a in agents]


@mcp.tool()
def wait_agent(ctx: Context, task_id: str, timeout: float = 60) -> dict:
    """Block up to `timeout` seconds for an agent to finish."""
    try:
        return agent_dict(_ctx(ctx).conductor.wait(task_id, timeout))
    except ConductorError as e:
        return _error(e)


@mcp.tool()
def kill_agent(ctx: Context, task_id: str) -> dict:
    """Terminate a running agent. Its worktree is kept for resume or reap."""
    try:
        return agent_dict(_ctx(ctx).conductor.kill(task_id))
    except ConductorError as e:
        return _error(e)


@mcp.tool()
def reap_agent(ctx: Context, task_id: str, wait: bool = False) -> dict:
    """Merge a finished agent's branch up the cascade and mark the task Done.

    A failed agent marks the task Blocked and returns the error with the
    output tail. A merge conflict lists the conflicting files.
    """
    try:
        return agent_dict(_ctx(ctx).conductor.reap(task_id, wait=wait))
    except (ConductorError, GitError) as e:
        return _error(e)


@mcp.tool()
def reject_agent(ctx: Context, task_id: str, reason: str = "") -> dict:
    """Discard an agent's worktree and branch."""
    try:
        return agent_dict(_ctx(ctx).conductor.reject(task_id, reason))
    except (ConductorError, GitError) as e:
        return _error(e)


@mcp.tool()
def reset_agent(ctx: Context, task_id: str) -> dict:
    """Kill, discard, clear the record and return the task to Not Started."""
    try:
        return _ctx(ctx).conductor.reset(task_id)
    except (ConductorError, GitError) as e:
        return _error(e)


@mcp.tool()
def agent_log(ctx: Context, task_id: str, lines: int = 50, events: bool = False) -> dict:
    """Tail of an agent's output, or its lifecycle events."""
    app = _ctx(ctx)
    if events:
        return {"task_id": task_id, "events": [event_dict(e) for e in agents_mod.get_agent_events(app.db, task_id)]}
    output = app.conductor.log_tail(task_id, lines)
    if output is None:
        return {"error": f"No agent for task: {task_id}"}
    return {"task_id": task_id, "output": output}


# ── Worktree Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def list_worktrees(ctx: Context) -> list[dict]:
    """Task worktrees registered with git."""
    config = _ctx(ctx).config
    return worktrees_mod.list_task_worktrees(config.repo_path, config)


@mcp.tool()
def worktree_status(ctx: Context, task_id: str) -> dict:
    """Cleanliness and ahead/behind counts of a task's worktree."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    base = worktrees_mod.parent_branch(task, app.config) if task else None
    try:
        status = worktrees_mod.get_worktree_status(app.config.repo_path, task_id, app.config, base)
    except GitError as e:
        return _error(e)
    return worktree_status_dict(status)


@mcp.tool()
def prune_worktrees(ctx: Context, dry_run: bool = True) -> dict:
    """Reconcile worktrees with agent records. Dry run by default."""
    app = _ctx(ctx)
    try:
        return worktrees_mod.prune(app.config.repo_path, app.config, app.db, dry_run=dry_run)
    except GitError as e:
        return _error(e)
