"""CLI entry point for the backlog conductor."""

import functools
import json
import logging
import sqlite3
import sys

import click

from backlog_conductor.config import get_config
from backlog_conductor.core import tasks as tasks_mod
from backlog_conductor.core import worktrees as worktrees_mod
from backlog_conductor.core.conductor import Conductor
from backlog_conductor.core.errors import ConductorError, ConfigError
from backlog_conductor.core.agents import list_agents as stored_agents
from backlog_conductor.core.lexicon import require_status, status_symbol
from backlog_conductor.db.engine import get_db
from backlog_conductor.db.models import AgentStatus
from backlog_conductor.integrations.git import GitError
from backlog_conductor.serialize import agent_dict, event_dict, impact_dict, node_dict, task_dict, worktree_status_dict


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _conductor() -> Conductor:
    return Conductor(get_config())


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


def handle_errors(fn):
    """Report conductor, git and validation errors as ``Error: ...`` and exit 1."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ConductorError as e:
            click.echo(f"Error: {e.message}", err=True)
            for f in getattr(e, "files", []):
                click.echo(f"  conflict: {f}", err=True)
            if getattr(e, "output", None):
                click.echo("  --- output tail ---", err=True)
                click.echo(e.output.rstrip(), err=True)
            if e.next_steps:
                click.echo("Next steps:", err=True)
                for step in e.next_steps:
                    click.echo(f"  {step}", err=True)
            sys.exit(1)
        except (ConfigError, GitError, ValueError, sqlite3.IntegrityError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    return wrapper


@click.group()
@click.option("--verbose", "-v", count=True, help="More logging (-v info, -vv debug)")
def main(verbose):
    """bcon - Backlog Conductor CLI"""
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        try:
            level = getattr(logging, get_config().log_level.upper(), logging.WARNING)
        except ConfigError:
            level = logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


# ── PRD / Epic Commands ───────────────────────────────────────────────────────


@main.group("prd")
def prd_group():
    """Manage PRDs."""
    pass


@prd_group.command("add")
@click.argument("prd_id")
@click.option("--title", "-t", default="", help="PRD title")
@handle_errors
def prd_add(prd_id, title):
    """Create a PRD."""
    with _get_db() as db:
        prd = tasks_mod.create_prd(db, prd_id, title)
        click.echo(f"Created PRD: {prd.id}")


@main.group("epic")
def epic_group():
    """Manage epics."""
    pass


@epic_group.command("add")
@click.argument("epic_id")
@click.option("--title", "-t", default="", help="Epic title")
@click.option("--prd", "prd_id", default=None, help="Parent PRD id")
@handle_errors
def epic_add(epic_id, title, prd_id):
    """Create an epic."""
    with _get_db() as db:
        epic = tasks_mod.create_epic(db, epic_id, title, prd_id)
        click.echo(f"Created epic: {epic.id}")
        if epic.prd_id:
            click.echo(f"  PRD: {epic.prd_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--id", "task_id", default=None, help="Task id (default: next T###)")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--effort", "-e", default=None, help="Duration (2h, 30m) or size (S, M, L, XL)")
@click.option("--priority", "-p", default="normal", help="low, normal, high or critical")
@click.option("--prd", "prd_id", default=None, help="PRD id")
@click.option("--epic", "epic_id", default=None, help="Epic id")
@click.option("--blocked-by", default=None, help="Comma-separated ids this task waits on")
@handle_errors
def task_add(title, task_id, description, effort, priority, prd_id, epic_id, blocked_by):
    """Create a new task."""
    blockers = [b.strip() for b in blocked_by.split(",") if b.strip()] if blocked_by else None
    with _get_db() as db:
        task = tasks_mod.create_task(
            db, title, task_id=task_id, description=description, effort=effort, priority=priority,
            prd_id=prd_id, epic_id=epic_id, blocked_by=blockers,
        )
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status.value}")
        if task.blocked_by:
            click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")


@task_group.command("list")
@click.option("--prd", "prd_id", default=None, help="Filter by PRD")
@click.option("--epic", "epic_id", default=None, help="Filter by epic")
@click.option("--status", default=None, help="Filter by status (aliases like todo/wip accepted)")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def task_list(prd_id, epic_id, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, prd_id=prd_id, epic_id=epic_id, status=status)

    if json_output:
        _echo_json([task_dict(t) for t in tasks])
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    for task in tasks:
        blockers = f" [blocked by: {', '.join(task.blocked_by)}]" if task.blocked_by else ""
        effort = f" {task.effort}" if task.effort else ""
        click.echo(f"  {status_symbol(task.status)} {task.id}: {task.title} ({task.status.value}){effort}{blockers}")


@task_group.command("show")
@click.argument("task_id")
@handle_errors
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status.value}")
        click.echo(f"  Priority: {task.priority.value}")
        if task.effort:
            click.echo(f"  Effort: {task.effort}")
        if task.prd_id:
            click.echo(f"  PRD: {task.prd_id}")
        if task.epic_id:
            click.echo(f"  Epic: {task.epic_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.blocked_by:
            click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")
        if task.started_at:
            click.echo(f"  Started: {task.started_at.isoformat()}")
        if task.done_at:
            click.echo(f"  Done: {task.done_at.isoformat()}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("status")
@click.argument("task_id")
@click.argument("status")
@handle_errors
def task_status(task_id, status):
    """Set a task's status (aliases like todo, wip, done accepted)."""
    resolved = require_status(status)
    with _get_db() as db:
        task = tasks_mod.update_task_status(db, task_id, resolved)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"{task_id}: {task.status.value}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("blocked_by_id")
@handle_errors
def task_add_dep(task_id, blocked_by_id):
    """Make TASK_ID wait for BLOCKED_BY_ID."""
    with _get_db() as db:
        task = tasks_mod.add_dependency(db, task_id, blocked_by_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Added dependency: {task_id} is blocked by {blocked_by_id}")
        click.echo(f"  Blocked by: {', '.join(task.blocked_by)}")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("blocked_by_id")
@handle_errors
def task_remove_dep(task_id, blocked_by_id):
    """Remove a blocker from a task."""
    with _get_db() as db:
        task = tasks_mod.remove_dependency(db, task_id, blocked_by_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Removed dependency: {task_id} no longer waits on {blocked_by_id}")
        if task.blocked_by:
            click.echo(f"  Remaining blockers: {', '.join(task.blocked_by)}")
        else:
            click.echo("  No remaining blockers")


# ── Dependency Commands ───────────────────────────────────────────────────────


@main.group("deps")
def deps_group():
    """Analyze the dependency graph."""
    pass


@deps_group.command("ready")
@click.option("--prd", "prd_id", default=None, help="Restrict to a PRD")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def deps_ready(prd_id, json_output):
    """Tasks that can start now."""
    ready = _conductor().ready_tasks(prd_id)
    if json_output:
        _echo_json([node_dict(n) for n in ready])
        return
    if not ready:
        click.echo("No ready tasks.")
        return
    for node in ready:
        click.echo(f"  {node.id}: {node.title}")


@deps_group.command("cycles")
@handle_errors
def deps_cycles():
    """Report dependency cycles. Exits 1 if any exist."""
    cycles = _conductor().cycles()
    if not cycles:
        click.echo("No cycles.")
        return
    for cycle in cycles:
        click.echo(f"  {' -> '.join(cycle)}")
    sys.exit(1)


@deps_group.command("impact")
@click.option("--limit", "-n", default=10, type=int, help="How many to show")
@click.option("--all", "include_done", is_flag=True, help="Include finished tasks")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def deps_impact(limit, include_done, json_output):
    """Rank bottlenecks by dependents x downstream chain."""
    ranked = _conductor().bottlenecks(limit=limit, include_done=include_done)
    if json_output:
        _echo_json([impact_dict(i) for i in ranked])
        return
    if not ranked:
        click.echo("Nothing is blocking anything.")
        return
    for i in ranked:
        click.echo(f"  {i.id}: score {i.score} ({i.direct} direct, chain {i.chain}) {' -> '.join(i.path)}")


@deps_group.command("critical")
@click.argument("task_id")
@handle_errors
def deps_critical(task_id):
    """Longest chain of tasks waiting on TASK_ID."""
    result = _conductor().critical_path(task_id)
    click.echo(f"{task_id}: {result['length']} task(s)")
    click.echo(f"  {' -> '.join(result['path'])}")


@deps_group.command("tree")
@click.argument("task_id")
@handle_errors
def deps_tree(task_id):
    """Show what TASK_ID waits on, recursively."""
    with _get_db() as db:
        tasks = {t.id: t for t in tasks_mod.list_tasks(db)}
    if task_id not in tasks:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)

    def show(tid: str, depth: int, seen: frozenset):
        task = tasks.get(tid)
        if task is None:
            click.echo(f"{'  ' * depth}? {tid} (missing)")
            return
        cyclic = " (cycle)" if tid in seen else ""
        click.echo(f"{'  ' * depth}{status_symbol(task.status)} {tid}: {task.title}{cyclic}")
        if cyclic:
            return
        for blocker in task.blocked_by:
            show(blocker, depth + 1, seen | {tid})

    show(task_id, 0, frozenset())


# ── Schedule Commands ─────────────────────────────────────────────────────────


@main.group("schedule")
def schedule_group():
    """Schedules and Gantt metrics."""
    pass


@schedule_group.command("gantt")
@click.option("--prd", "prd_id", default=None, help="Restrict to a PRD")
@click.option("--cap", "display_cap", default=None, type=float, help="Cap the display span (hours)")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def schedule_gantt(prd_id, display_cap, json_output):
    """Show the real schedule and its metrics."""
    data = _conductor().gantt(prd_id, display_cap_hours=display_cap)
    if json_output:
        _echo_json(data)
        return

    metrics = data["metrics"]
    click.echo(f"T0: {data['t0']}")
    click.echo(
        f"Span: {metrics['real_span_hours']:.1f}h real, {metrics['display_span_hours']:.1f}h displayed, "
        f"{metrics['critical_timespan_hours']:.1f}h critical"
    )
    click.echo(
        f"Effort: {metrics['total_effort_hours']:.1f}h across {metrics['task_count']} task(s), "
        f"parallelism {metrics['parallel_efficiency']:.2f}"
    )
    if metrics["overflow_hours"]:
        click.echo(f"Overrun: {metrics['overflow_hours']:.1f}h past plan")
    if metrics["critical_path"]:
        click.echo(f"Critical path: {' -> '.join(metrics['critical_path'])}")

    critical = set(metrics["critical_path"])
    for task_id, s in sorted(data["schedule"].items(), key=lambda kv: (kv[1]["start_hour"], kv[0])):
        mark = "*" if task_id in critical else " "
        click.echo(
            f" {mark} {task_id:<8} {s['start_hour']:7.1f}h -> {s['end_hour']:7.1f}h "
            f"({s['duration_hours']:.1f}h) {s['status']}"
        )


@schedule_group.command("verify")
@click.option("--prd", "prd_id", default=None, help="Restrict to a PRD")
@handle_errors
def schedule_verify(prd_id):
    """Recompute span metrics from the schedule and report drift."""
    data = _conductor().gantt(prd_id)
    if not data["problems"]:
        click.echo(f"OK: max end {data['metrics']['max_end_hour']:.2f}h matches the schedule")
        return
    for problem in data["problems"]:
        click.echo(f"  {problem}", err=True)
    sys.exit(1)


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Spawn and manage task agents."""
    pass


def _print_agent(agent):
    click.echo(f"Agent {agent.task_id}: {agent.status.value}")
    if agent.pid:
        click.echo(f"  PID: {agent.pid}")
    if agent.branch:
        click.echo(f"  Branch: {agent.branch} (from {agent.base_branch})")
    if agent.worktree_path:
        click.echo(f"  Worktree: {agent.worktree_path}")
    if agent.exit_code is not None:
        click.echo(f"  Exit code: {agent.exit_code}")
    if agent.kill_reason:
        click.echo(f"  Killed: {agent.kill_reason}")
    if agent.reject_reason:
        click.echo(f"  Rejected: {agent.reject_reason}")
    if agent.log_file:
        click.echo(f"  Log: {agent.log_file}")


@agent_group.command("spawn")
@click.argument("task_id")
@click.option("--timeout", default=None, type=int, help="Wall-clock limit in seconds (0 = none)")
@click.option("--resume", is_flag=True, help="Reuse an existing worktree or branch")
@click.option("--worktree/--no-worktree", default=None, help="Run in a dedicated worktree")
@click.option("--instructions", "-i", default="", help="Extra instructions for the agent")
@click.option("--detach", is_flag=True, help="Return right after starting the agent")
@handle_errors
def agent_spawn(task_id, timeout, resume, worktree, instructions, detach):
    """Spawn an agent for a ready task."""
    conductor = _conductor()
    agent = conductor.spawn(
        task_id, timeout=timeout, resume=resume, worktree=worktree,
        instructions=instructions, supervise=not detach,
    )
    click.echo(f"Spawned agent for {task_id} (PID {agent.pid})")
    if agent.worktree_path:
        click.echo(f"  Worktree: {agent.worktree_path}")
    if detach:
        return

    click.echo("  Supervising... (Ctrl-C stops supervising; the agent keeps running)")
    try:
        agent = conductor.wait(task_id)
    except KeyboardInterrupt:
        conductor.shutdown()
        click.echo(f"\nDetached. Check later with: bcon agent status {task_id}")
        return
    _print_agent(agent)
    if agent.status == AgentStatus.COMPLETED:
        click.echo(f"Next: bcon agent reap {task_id}")


@agent_group.command("status")
@click.argument("task_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def agent_status(task_id, json_output):
    """Show an agent's status, reconciled with its process."""
    agent = _conductor().status(task_id)
    if not agent:
        click.echo(f"No agent for task: {task_id}", err=True)
        sys.exit(1)
    if json_output:
        _echo_json(agent_dict(agent))
        return
    _print_agent(agent)


@agent_group.command("list")
@click.option("--status", default=None, type=click.Choice([s.value for s in AgentStatus]), help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def agent_list(status, json_output):
    """List agents."""
    agents = _conductor().list_agents(status)
    if json_output:
        _echo_json([agent_dict(a) for a in agents])
        return
    if not agents:
        click.echo("No agents.")
        return
    for a in agents:
        pid = f" PID {a.pid}" if a.pid and a.status.is_live else ""
        click.echo(f"  {a.task_id}: {a.status.value}{pid}")


@agent_group.command("kill")
@click.argument("task_id")
@handle_errors
def agent_kill(task_id):
    """Terminate a running agent. The worktree is kept."""
    agent = _conductor().kill(task_id)
    click.echo(f"Agent {task_id}: {agent.status.value}")


@agent_group.command("wait")
@click.argument("task_id")
@click.option("--timeout", default=None, type=float, help="Give up after this many seconds")
@handle_errors
def agent_wait(task_id, timeout):
    """Block until an agent finishes."""
    agent = _conductor().wait(task_id, timeout)
    _print_agent(agent)
    if agent.status.is_live:
        sys.exit(2)


@agent_group.command("reap")
@click.argument("task_id")
@click.option("--no-wait", is_flag=True, help="Fail instead of waiting for a running agent")
@click.option("--timeout", default=None, type=float, help="Maximum seconds to wait")
@handle_errors
def agent_reap(task_id, no_wait, timeout):
    """Merge a finished agent's work and clean up."""
    conductor = _conductor()
    agent = conductor.reap(task_id, wait=not no_wait, timeout=timeout)
    click.echo(f"Reaped {task_id}")
    merged = [e for e in conductor.events(task_id) if e.event_type == AgentStatus.REAPED.value]
    if merged and merged[-1].detail:
        click.echo(f"  {merged[-1].detail}")
    click.echo(f"  Agent: {agent.status.value}")


@agent_group.command("reject")
@click.argument("task_id")
@click.option("--reason", "-r", default="", help="Why the work is discarded")
@handle_errors
def agent_reject(task_id, reason):
    """Discard an agent's worktree and branch."""
    _conductor().reject(task_id, reason)
    click.echo(f"Rejected {task_id}; worktree and branch removed")


@agent_group.command("reset")
@click.argument("task_id")
@handle_errors
def agent_reset(task_id):
    """Kill, discard, clear and return the task to Not Started."""
    result = _conductor().reset(task_id)
    done = [k for k in ("killed", "rejected", "cleared") if result[k]]
    click.echo(f"Reset {task_id}" + (f" ({', '.join(done)})" if done else ""))


@agent_group.command("clear")
@click.argument("task_id")
@handle_errors
def agent_clear(task_id):
    """Delete a finished agent's record."""
    if _conductor().clear(task_id):
        click.echo(f"Cleared agent record for {task_id}")
    else:
        click.echo(f"No agent for task: {task_id}")


@agent_group.command("log")
@click.argument("task_id")
@click.option("--lines", "-n", default=50, type=int, help="Number of lines")
@click.option("--events", is_flag=True, help="Show lifecycle events instead of output")
@handle_errors
def agent_log(task_id, lines, events):
    """Show the tail of an agent's output."""
    conductor = _conductor()
    if events:
        for e in conductor.events(task_id):
            d = event_dict(e)
            click.echo(f"  [{d['created_at']}] {d['event_type']}: {d.get('detail') or ''}")
        return
    output = conductor.log_tail(task_id, lines)
    if output is None:
        click.echo(f"No agent for task: {task_id}", err=True)
        sys.exit(1)
    click.echo(output, nl=False)


# ── Worktree Commands ────────────────────────────────────────────────────────


@main.group("worktree")
def worktree_group():
    """Inspect and reconcile task worktrees."""
    pass


@worktree_group.command("list")
@handle_errors
def worktree_list():
    """List task worktrees."""
    config = get_config()
    wts = worktrees_mod.list_task_worktrees(config.repo_path, config)
    if not wts:
        click.echo("No worktrees found.")
        return
    for wt in wts:
        missing = "" if wt["exists"] else " (missing)"
        click.echo(f"  {wt['task_id']}: {wt['branch']} at {wt['path']}{missing}")


@worktree_group.command("status")
@click.argument("task_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@handle_errors
def worktree_status(task_id, json_output):
    """Cleanliness and ahead/behind counts of a task's worktree."""
    config = get_config()
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
    base = worktrees_mod.parent_branch(task, config) if task else None
    status = worktrees_mod.get_worktree_status(config.repo_path, task_id, config, base)
    if json_output:
        _echo_json(worktree_status_dict(status))
        return
    if not status.exists:
        click.echo(f"No worktree for {task_id} at {status.path}")
        return
    state = "clean" if status.clean else f"{len(status.files)} uncommitted change(s)"
    click.echo(f"{status.branch}: {state}, {status.ahead} ahead, {status.behind} behind")
    for f in status.files:
        click.echo(f"  {f}")


@worktree_group.command("orphans")
@handle_errors
def worktree_orphans():
    """Report worktrees, records and branches that are out of sync."""
    config = get_config()
    with _get_db() as db:
        report = worktrees_mod.find_orphans(config.repo_path, config, stored_agents(db))
    if report.empty:
        click.echo("No orphans.")
        return
    for wt in report.orphan_worktrees:
        click.echo(f"  orphan worktree: {wt['path']} ({wt['branch']})")
    for task_id in report.ghost_agents:
        click.echo(f"  ghost agent: {task_id} (worktree missing)")
    for branch in report.dangling_branches:
        click.echo(f"  dangling branch: {branch}")


@worktree_group.command("prune")
@click.option("--dry-run", is_flag=True, help="Only show what would be done")
@handle_errors
def worktree_prune(dry_run):
    """Remove orphan worktrees and detach ghost agents."""
    config = get_config()
    with _get_db() as db:
        result = worktrees_mod.prune(config.repo_path, config, db, dry_run=dry_run)
    if not result["actions"] and not result["dangling_branches"]:
        click.echo("Nothing to prune.")
        return
    prefix = "would " if dry_run else ""
    for action in result["actions"]:
        click.echo(f"  {prefix}{action}")
    for branch in result["dangling_branches"]:
        click.echo(f"  kept dangling branch {branch} (delete it by hand or reset the task)")


# ── Server Commands ───────────────────────────────────────────────────────────


@main.group("serve")
def serve_group():
    """Run the JSON API."""
    pass


@serve_group.command("api")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_api(host, port):
    """Start the JSON API server."""
    from backlog_conductor.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from backlog_conductor.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
