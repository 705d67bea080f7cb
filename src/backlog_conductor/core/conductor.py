"""Agent lifecycle conductor.

Drives one external coding agent per task through
spawned -> running -> completed/error/killed -> reaped, with rejected
reachable from any state before reaped. Records live in SQLite (see
``core.agents``); task status changes go through the backlog collaborator.

Operations on the same task id are serialized by a per-task lock. Status
reads reconcile the stored record with the real process, so no background
poller is needed for detached agents.
"""

import logging
import shlex
import shutil
import sqlite3
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path

from backlog_conductor.config import Config
from backlog_conductor.core import agents as agent_store
from backlog_conductor.core.errors import (
    CycleError,
    MergeConflictError,
    PreconditionError,
    ProcessError,
)
from backlog_conductor.core.graph import (
    DependencyGraph,
    Impact,
    TaskNode,
    build_graph,
    cycles_through,
    detect_cycles,
    filter_graph,
    longest_path,
    rank_bottlenecks,
    ready_tasks,
    unresolved_blockers,
)
from backlog_conductor.core.merge import cascade_task, preflight
from backlog_conductor.core.process import (
    EXIT_FILE_NAME,
    AgentProcess,
    ProcessSpawner,
    Watchdog,
    is_pid_alive,
    read_exit_code,
    terminate,
)
from backlog_conductor.core.scheduling import (
    calculate_gantt_metrics,
    compute_t0,
    get_task_schedules,
    verify_gantt_metrics,
)
from backlog_conductor.core.tasks import SqliteBacklog
from backlog_conductor.core.worktrees import (
    WorktreeHandle,
    create_worktree_for_task,
    remove_worktree_for_task,
    task_branch,
    worktree_path_for,
)
from backlog_conductor.db.engine import get_db, utc_now
from backlog_conductor.db.models import Agent, AgentStatus, Task, TaskStatus
from backlog_conductor.integrations.git import branch_exists, is_git_repo, status_porcelain
from backlog_conductor.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)

S = AgentStatus

ALLOWED_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    S.SPAWNED: frozenset({S.RUNNING, S.ERROR, S.KILLED, S.REJECTED}),
    S.RUNNING: frozenset({S.COMPLETED, S.ERROR, S.KILLED, S.REJECTED}),
    S.COMPLETED: frozenset({S.REAPED, S.REJECTED}),
    S.ERROR: frozenset({S.REAPED, S.REJECTED}),
    S.KILLED: frozenset({S.REAPED, S.REJECTED}),
    S.REJECTED: frozenset(),
    S.REAPED: frozenset(),
}

# A record stuck in "spawned" with no pid for this long means the launching
# process died between writing the record and starting the agent.
SPAWN_GRACE_SECONDS = 30.0
LOG_TAIL_LINES = 20


def build_mission(task: Task, graph: DependencyGraph, handle: WorktreeHandle | None, instructions: str = "") -> str:
    """Build the prompt fed to the agent on stdin."""
    parts = [f"# Task: {task.title}", f"Task ID: {task.id}"]
    if task.description:
        parts.append(f"\n## Description\n{task.description}")
    if task.effort:
        parts.append(f"Effort: {task.effort}")

    if task.blocked_by:
        parts.append("\n## Dependencies")
        for blocker_id in task.blocked_by:
            node = graph.tasks.get(blocker_id)
            if node:
                parts.append(f"- {node.title} ({node.id}): {node.status.value}")
            else:
                parts.append(f"- {blocker_id}: unknown")

    dependents = graph.blocks.get(task.id, [])
    if dependents:
        parts.append(f"\nFinishing this task unblocks: {', '.join(dependents)}")

    if handle:
        parts.append("\n## Workspace")
        parts.append(f"Working branch: {handle.branch} (from {handle.base_branch})")
        parts.append(f"Worktree: {handle.path}")
        if handle.resumed:
            parts.append("This worktree already contains earlier work on this task. Continue from it.")

    if instructions:
        parts.append(f"\n## Instructions\n{instructions}")

    parts.append(
        "\n## Completion\n"
        "Commit your work on the working branch before exiting. "
        "Finish with a brief summary of what was accomplished, "
        "any files changed, and any issues encountered."
    )
    return "\n".join(parts)


class Conductor:
    """Spawns, supervises and collects agents for backlog tasks."""

    def __init__(self, config: Config, backlog=None, spawner=None, notifier=None):
        self.config = config
        self.backlog = backlog or SqliteBacklog(config.db_path)
        self.spawner = spawner or ProcessSpawner()
        self.notifier = notifier or SlackNotifier(config.slack_bot_token, config.slack_channel)
        self.spawn_grace = SPAWN_GRACE_SECONDS
        self.poll_interval = 1.0
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        # Held from the live-agent count until the spawned record is written.
        self._spawn_gate = threading.Lock()
        self._processes: dict[str, AgentProcess] = {}
        self._watchdogs: dict[str, Watchdog] = {}

    def _lock(self, task_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(task_id, threading.RLock())

    def _db(self):
        return get_db(self.config.db_path)

    def _graph(self) -> DependencyGraph:
        return build_graph(self.backlog.list_tasks(), self.backlog.list_epics())

    # ── Record transitions ──────────────────────────────────────────────

    def _transition(self, db, agent: Agent, status: AgentStatus, detail: str | None = None, **changes) -> Agent:
        if status not in ALLOWED_TRANSITIONS[agent.status]:
            raise PreconditionError(
                f"Agent for {agent.task_id} cannot go from {agent.status.value} to {status.value}",
                task_id=agent.task_id,
                reason="illegal_transition",
            )
        old = agent.status
        agent.status = status
        for key, value in changes.items():
            setattr(agent, key, value)
        saved = agent_store.save_agent(db, agent)
        agent_store.log_agent_event(db, agent.task_id, status.value, detail)
        logger.info("Agent %s: %s -> %s%s", agent.task_id, old.value, status.value, f" ({detail})" if detail else "")
        return saved

    def _forget_process(self, task_id: str):
        self._processes.pop(task_id, None)
        watchdog = self._watchdogs.pop(task_id, None)
        if watchdog is not None:
            watchdog.stop(wait=False)

    def _notify(self, event: str, task_id: str, message: str, next_steps=()):
        logger.warning("Escalation [%s] %s: %s", event, task_id, message)
        self.notifier.notify(event, task_id, message, list(next_steps))

    # ── Reconciliation ──────────────────────────────────────────────────

    def _reconcile(self, db, agent: Agent | None) -> Agent | None:
        """Bring a live record in line with the real process."""
        if agent is None or not agent.status.is_live:
            return agent
        task_id = agent.task_id
        now = utc_now()

        if agent.pid is None:
            if agent.spawned_at and now - agent.spawned_at > timedelta(seconds=self.spawn_grace):
                return self._transition(
                    db, agent, S.ERROR, "spawned without pid",
                    completed_at=now, result_summary="Agent record was written but the process never started",
                )
            return agent

        watchdog = self._watchdogs.get(task_id)
        if watchdog is not None and watchdog.running:
            return agent

        proc = self._processes.get(task_id)
        if proc is not None and proc.pid == agent.pid:
            exited, code = proc.exited(), None
            if exited:
                code = proc.exit_code()
        else:
            exited = not is_pid_alive(agent.pid)
            code = read_exit_code(self._exit_file(agent)) if exited else None

        if exited:
            self._forget_process(task_id)
            return self._record_exit(db, agent, code)

        return self._enforce_limits(db, agent, now)

    def _exit_file(self, agent: Agent) -> Path | None:
        if not agent.log_file:
            return None
        return Path(agent.log_file).parent / EXIT_FILE_NAME

    def _record_exit(self, db, agent: Agent, code: int | None) -> Agent:
        summary = agent_store.tail_file(agent.log_file, LOG_TAIL_LINES).strip() or None
        if code == 0:
            return self._transition(
                db, agent, S.COMPLETED, "exit 0", completed_at=utc_now(), exit_code=0, result_summary=summary
            )
        detail = f"exit {code}" if code is not None else "exited without status"
        updated = self._transition(
            db, agent, S.ERROR, detail, completed_at=utc_now(), exit_code=code, result_summary=summary
        )
        self._notify("error", agent.task_id, f"Agent {detail}", [f"bcon agent reap {agent.task_id}"])
        return updated

    def _enforce_limits(self, db, agent: Agent, now: datetime) -> Agent:
        """Apply the wall-clock and idle limits to an unsupervised agent."""
        reason = None
        started = agent.started_at or agent.spawned_at
        if agent.timeout and started and now - started > timedelta(seconds=agent.timeout):
            reason = "timeout"
        elif agent.watchdog_timeout and agent.log_file and Path(agent.log_file).exists():
            idle = time.time() - Path(agent.log_file).stat().st_mtime
            if idle > agent.watchdog_timeout:
                reason = "watchdog"
        if reason is None:
            return agent

        terminate(agent.pid, self.config.kill_grace)
        updated = self._transition(db, agent, S.KILLED, reason, killed_at=now, kill_reason=reason)
        self._notify(reason, agent.task_id, f"Agent killed ({reason})", [f"bcon agent reap {agent.task_id}"])
        return updated

    def _on_exit(self, task_id: str, pid: int, reason: str | None, code: int | None):
        """Watchdog callback, run on the watchdog thread."""
        with self._lock(task_id):
            with self._db() as db:
                agent = agent_store.get_agent(db, task_id)
                if agent is None or agent.pid != pid or not agent.status.is_live:
                    return
                self._processes.pop(task_id, None)
                self._watchdogs.pop(task_id, None)
                if reason:
                    self._transition(db, agent, S.KILLED, reason, killed_at=utc_now(), kill_reason=reason)
                    self._notify(reason, task_id, f"Agent killed ({reason})", [f"bcon agent reap {task_id}"])
                else:
                    self._record_exit(db, agent, code)

    # ── Spawn ───────────────────────────────────────────────────────────

    def _agent_argv(self) -> list[str]:
        argv = shlex.split(self.config.agent_command)
        if self.config.agent_model and "--model" not in argv:
            argv += ["--model", self.config.agent_model]
        return argv

    def _check_spawn(self, db, task: Task, graph: DependencyGraph, resume: bool) -> Agent | None:
        """Raise unless ``task`` may get an agent. Returns the previous record, if any."""
        task_id = task.id
        existing = self._reconcile(db, agent_store.get_agent(db, task_id))
        if existing is not None:
            if existing.status.is_live:
                raise PreconditionError(
                    f"Task {task_id} already has a {existing.status.value} agent (PID {existing.pid})",
                    task_id=task_id,
                    reason="agent_exists",
                    next_steps=[f"bcon agent wait {task_id}", f"bcon agent kill {task_id}"],
                )
            if existing.status in (S.COMPLETED, S.ERROR, S.KILLED) and not resume:
                raise PreconditionError(
                    f"Task {task_id} has an unreaped {existing.status.value} agent",
                    task_id=task_id,
                    reason="agent_not_reaped",
                    next_steps=[
                        f"bcon agent reap {task_id}",
                        f"bcon agent spawn {task_id} --resume",
                        f"bcon agent reset {task_id}",
                    ],
                )

        if task.status.is_terminal:
            raise PreconditionError(
                f"Task {task_id} is already {task.status.value}", task_id=task_id, reason="task_finished"
            )

        cycles = cycles_through(task_id, graph.tasks)
        if cycles:
            paths = "; ".join(" -> ".join(c) for c in cycles)
            raise CycleError(
                f"Task {task_id} is part of a dependency cycle: {paths}",
                cycles=cycles,
                task_id=task_id,
                reason="cycle",
                next_steps=["Remove one of the dependencies with `bcon task remove-dep`"],
            )

        pending = unresolved_blockers(graph.tasks[task_id], graph.tasks)
        if pending:
            raise PreconditionError(
                f"Task {task_id} is blocked by unresolved task(s): {', '.join(pending)}",
                task_id=task_id,
                reason="blocked",
                next_steps=[f"Finish {b} first" for b in pending],
            )

        if self.config.max_parallel:
            live = [a for a in agent_store.list_agents(db) if self._reconcile(db, a).status.is_live]
            if len(live) >= self.config.max_parallel:
                raise PreconditionError(
                    f"{len(live)} agents already running (max_parallel={self.config.max_parallel})",
                    task_id=task_id,
                    reason="max_parallel",
                    next_steps=["Wait for an agent to finish, or raise BC_MAX_PARALLEL"],
                )

        repo = self.config.repo_path
        if not is_git_repo(repo):
            raise PreconditionError(
                f"Not a git repository: {repo}", task_id=task_id, reason="not_git_repo",
                next_steps=["Set BC_REPO_PATH to the project repository"],
            )
        dirty = status_porcelain(repo)
        if dirty:
            raise PreconditionError(
                f"Main checkout has {len(dirty)} uncommitted change(s): {', '.join(dirty[:5])}",
                task_id=task_id,
                reason="dirty_repo",
                next_steps=[f"Commit or stash the changes in {repo}"],
            )

        argv = self._agent_argv()
        if not shutil.which(argv[0]):
            raise PreconditionError(
                f"Agent command not found: {argv[0]}",
                task_id=task_id,
                reason="agent_unavailable",
                next_steps=["Install it or set BC_AGENT_COMMAND"],
            )
        return existing

    def _record_spawn(self, db, agent: Agent, previous: Agent | None) -> Agent:
        """Write the ``spawned`` record, replacing a finished one if present."""
        if previous is not None:
            return agent_store.save_agent(db, agent)
        try:
            return agent_store.insert_agent(db, agent)
        except sqlite3.IntegrityError as e:
            # Another process wrote a record for this task after the check.
            raise PreconditionError(
                f"Task {agent.task_id} already has an agent",
                task_id=agent.task_id,
                reason="agent_exists",
                next_steps=[f"bcon agent status {agent.task_id}"],
            ) from e

    def spawn(
        self,
        task_id: str,
        timeout: int | None = None,
        resume: bool = False,
        worktree: bool | None = None,
        instructions: str = "",
        supervise: bool = True,
    ) -> Agent:
        """Start an agent on a ready task.

        Every precondition is checked before anything is written. The agent
        record is stored as ``spawned`` before the process starts and moved
        to ``running`` with its pid afterwards.
        """
        cfg = self.config
        use_worktree = cfg.use_worktrees if worktree is None else worktree

        with self._lock(task_id):
            task = self.backlog.get_task(task_id)
            if task is None:
                raise PreconditionError(f"Task not found: {task_id}", task_id=task_id, reason="task_not_found")
            graph = self._graph()

            with self._spawn_gate:
                with self._db() as db:
                    previous = self._check_spawn(db, task, graph, resume)

                handle = None
                cwd = cfg.repo_path
                if use_worktree:
                    handle = create_worktree_for_task(cfg.repo_path, task, cfg, resume=resume)
                    cwd = handle.path

                agent_dir = cfg.agent_dir / task_id
                agent_dir.mkdir(parents=True, exist_ok=True)
                mission = agent_dir / "mission.md"
                mission.write_text(build_mission(task, graph, handle, instructions))
                log_file = agent_dir / "agent.log"

                agent = Agent(
                    task_id=task_id,
                    status=S.SPAWNED,
                    worktree_path=str(handle.path) if handle else None,
                    branch=handle.branch if handle else None,
                    base_branch=handle.base_branch if handle else None,
                    log_file=str(log_file),
                    timeout=cfg.agent_timeout if timeout is None else timeout,
                    watchdog_timeout=cfg.watchdog_timeout,
                    spawned_at=utc_now(),
                    resumed=resume,
                )
                with self._db() as db:
                    agent = self._record_spawn(db, agent, previous)
                    agent_store.log_agent_event(db, task_id, "spawned", f"resume={resume} cwd={cwd}")

            with self._db() as db:
                try:
                    proc = self.spawner.spawn(
                        self._agent_argv(),
                        cwd=cwd,
                        log_file=log_file,
                        stdin_file=mission,
                        env={"BC_TASK_ID": task_id, "BC_BRANCH": agent.branch or ""},
                    )
                except (OSError, ValueError) as e:
                    self._transition(db, agent, S.ERROR, "launch failed", completed_at=utc_now(), result_summary=str(e))
                    raise ProcessError(
                        f"Could not start agent for {task_id}: {e}",
                        task_id=task_id,
                        reason="launch_failed",
                        next_steps=[f"bcon agent reset {task_id}"],
                    ) from e

                agent = self._transition(db, agent, S.RUNNING, f"pid {proc.pid}", pid=proc.pid, started_at=utc_now())

            self.backlog.update_task_status(task_id, TaskStatus.IN_PROGRESS)
            self._processes[task_id] = proc

            if supervise:
                watchdog = Watchdog(
                    proc,
                    on_exit=lambda reason, code, pid=proc.pid: self._on_exit(task_id, pid, reason, code),
                    idle_timeout=cfg.watchdog_timeout,
                    wall_timeout=agent.timeout or 0,
                    kill_grace=cfg.kill_grace,
                    poll_interval=self.poll_interval,
                )
                self._watchdogs[task_id] = watchdog
                watchdog.start()

            return agent

    # ── Status / kill / wait ────────────────────────────────────────────

    def status(self, task_id: str) -> Agent | None:
        with self._lock(task_id):
            with self._db() as db:
                return self._reconcile(db, agent_store.get_agent(db, task_id))

    def _require(self, db, task_id: str) -> Agent:
        agent = self._reconcile(db, agent_store.get_agent(db, task_id))
        if agent is None:
            raise PreconditionError(
                f"No agent for task {task_id}",
                task_id=task_id,
                reason="no_agent",
                next_steps=[f"bcon agent spawn {task_id}"],
            )
        return agent

    def kill(self, task_id: str, reason: str = "operator") -> Agent:
        """Terminate a live agent. A finished agent is returned unchanged."""
        with self._lock(task_id):
            with self._db() as db:
                agent = self._require(db, task_id)
                if not agent.status.is_live:
                    return agent
                proc = self._processes.get(task_id)
                terminate(agent.pid, self.config.kill_grace, proc.popen if proc and proc.pid == agent.pid else None)
                self._forget_process(task_id)
                return self._transition(db, agent, S.KILLED, reason, killed_at=utc_now(), kill_reason=reason)

    def wait(self, task_id: str, timeout: float | None = None) -> Agent:
        """Block until the agent leaves the live states or ``timeout`` elapses."""
        agent = self.status(task_id)
        if agent is None:
            raise PreconditionError(f"No agent for task {task_id}", task_id=task_id, reason="no_agent")
        if timeout is None and agent.timeout:
            timeout = agent.timeout + self.config.kill_grace + self.poll_interval * 2
        deadline = None if timeout is None else time.monotonic() + timeout

        while agent is not None and agent.status.is_live:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                break
            step = self.poll_interval if remaining is None else min(self.poll_interval, remaining)
            watchdog = self._watchdogs.get(task_id)
            if watchdog is not None and watchdog.running:
                watchdog.join(step)
            else:
                time.sleep(step)
            agent = self.status(task_id)
        return agent

    # ── Reap / reject / clear / reset ───────────────────────────────────

    def reap(self, task_id: str, wait: bool = True, timeout: float | None = None) -> Agent:
        """Collect a finished agent.

        Completed: merge its branch up the cascade, remove the worktree and
        mark the task Done. Error/killed: mark the task Blocked, keep the
        worktree for inspection and raise ProcessError with the output tail.
        A merge conflict leaves the agent completed so reap can be retried.
        """
        agent = self.status(task_id)
        if agent is None:
            raise PreconditionError(f"No agent for task {task_id}", task_id=task_id, reason="no_agent")
        if agent.status.is_live:
            if not wait:
                raise PreconditionError(
                    f"Agent for {task_id} is still {agent.status.value}",
                    task_id=task_id,
                    reason="still_running",
                    next_steps=[f"bcon agent wait {task_id}", f"bcon agent kill {task_id}"],
                )
            agent = self.wait(task_id, timeout)
            if agent.status.is_live:
                raise PreconditionError(
                    f"Agent for {task_id} did not finish within {timeout}s",
                    task_id=task_id,
                    reason="still_running",
                    next_steps=[f"bcon agent kill {task_id}"],
                )

        with self._lock(task_id):
            with self._db() as db:
                agent = self._require(db, task_id)
                if agent.status == S.REAPED:
                    return agent
                if agent.status == S.REJECTED:
                    raise PreconditionError(
                        f"Agent for {task_id} was rejected",
                        task_id=task_id,
                        reason="rejected",
                        next_steps=[f"bcon agent clear {task_id}"],
                    )
                if agent.status == S.COMPLETED:
                    return self._reap_completed(db, agent)
                return self._reap_failed(db, agent)

    def _reap_completed(self, db, agent: Agent) -> Agent:
        cfg = self.config
        task_id = agent.task_id
        task = self.backlog.get_task(task_id)
        if task is None:
            raise PreconditionError(f"Task not found: {task_id}", task_id=task_id, reason="task_not_found")
        merged = []

        if agent.branch and is_git_repo(cfg.repo_path) and branch_exists(cfg.repo_path, agent.branch):
            preflight(
                cfg.repo_path,
                agent.worktree_path,
                agent.base_branch or cfg.main_branch,
                auto_commit=cfg.auto_commit,
                message=f"{task_id}: uncommitted agent work",
                task_id=task_id,
            )
            try:
                results = cascade_task(cfg.repo_path, task, self.backlog, cfg)
            except MergeConflictError as e:
                e.task_id = task_id
                agent_store.log_agent_event(db, task_id, "merge_conflict", ", ".join(e.files))
                self._notify("merge_conflict", task_id, e.message, e.next_steps)
                raise
            merged = [f"{r.source} -> {r.target} ({r.strategy.value})" for r in results]
            remove_worktree_for_task(cfg.repo_path, task_id, cfg, force=True, delete_branch_after=True)

        self.backlog.update_task_status(task_id, TaskStatus.DONE)
        detail = "; ".join(merged) if merged else "no branch to merge"
        return self._transition(db, agent, S.REAPED, detail, reaped_at=utc_now(), worktree_path=None)

    def _reap_failed(self, db, agent: Agent) -> Agent:
        task_id = agent.task_id
        self.backlog.update_task_status(task_id, TaskStatus.BLOCKED)
        agent = self._transition(db, agent, S.REAPED, f"task blocked after {agent.status.value}", reaped_at=utc_now())
        cause = agent.kill_reason or (f"exit {agent.exit_code}" if agent.exit_code is not None else "error")
        next_steps = [f"bcon agent reset {task_id}  (discard the work and retry)"]
        if agent.worktree_path:
            next_steps.insert(0, f"bcon agent spawn {task_id} --resume  (continue in {agent.worktree_path})")
        self._notify("reap_failed", task_id, f"Agent failed ({cause}); task blocked", next_steps)
        raise ProcessError(
            f"Agent for {task_id} failed ({cause}); task marked Blocked",
            output=agent_store.tail_file(agent.log_file, LOG_TAIL_LINES) or None,
            exit_code=agent.exit_code,
            task_id=task_id,
            reason=agent.kill_reason or "nonzero_exit",
            next_steps=next_steps,
        )

    def _discard_work(self, task_id: str, agent: Agent | None = None):
        repo = self.config.repo_path
        if not is_git_repo(repo):
            return
        has_dir = worktree_path_for(self.config, task_id).exists()
        has_branch = branch_exists(repo, task_branch(task_id))
        if has_dir or has_branch or (agent and agent.worktree_path):
            remove_worktree_for_task(repo, task_id, self.config, force=True, delete_branch_after=True)

    def reject(self, task_id: str, reason: str = "") -> Agent:
        """Discard the agent's worktree and branch. A reaped agent is refused."""
        with self._lock(task_id):
            with self._db() as db:
                agent = self._require(db, task_id)
                if agent.status == S.REJECTED:
                    return agent
                if S.REJECTED not in ALLOWED_TRANSITIONS[agent.status]:
                    raise PreconditionError(
                        f"Agent for {task_id} was already reaped",
                        task_id=task_id,
                        reason="already_reaped",
                        next_steps=[f"bcon agent spawn {task_id} --resume", f"bcon agent reset {task_id}"],
                    )
                if agent.status.is_live:
                    agent = self.kill(task_id, reason="rejected")
                self._discard_work(task_id, agent)
                logger.info("Rejecting agent for %s: %s", task_id, reason or "(no reason)")
                return self._transition(
                    db, agent, S.REJECTED, reason or None,
                    rejected_at=utc_now(), reject_reason=reason or None, worktree_path=None,
                )

    def clear(self, task_id: str) -> bool:
        """Delete a finished agent's record and its agent directory."""
        with self._lock(task_id):
            with self._db() as db:
                agent = self._reconcile(db, agent_store.get_agent(db, task_id))
                if agent is None:
                    return False
                if agent.status.is_live:
                    raise PreconditionError(
                        f"Agent for {task_id} is still {agent.status.value}",
                        task_id=task_id,
                        reason="still_running",
                        next_steps=[f"bcon agent kill {task_id}"],
                    )
                self._forget_process(task_id)
                agent_store.delete_agent(db, task_id)
                agent_store.log_agent_event(db, task_id, "cleared")
            shutil.rmtree(self.config.agent_dir / task_id, ignore_errors=True)
            logger.info("Cleared agent record for %s", task_id)
            return True

    def reset(self, task_id: str) -> dict:
        """Kill, discard the work, clear the record and return the task to Not Started."""
        with self._lock(task_id):
            agent = self.status(task_id)
            killed = rejected = False
            if agent is not None and agent.status.is_live:
                self.kill(task_id, reason="reset")
                killed = True
            if agent is not None and agent.status not in (S.REJECTED, S.REAPED):
                self.reject(task_id, reason="reset")
                rejected = True
            else:
                self._discard_work(task_id, agent)
            cleared = self.clear(task_id)
            if self.backlog.get_task(task_id) is not None:
                self.backlog.update_task_status(task_id, TaskStatus.NOT_STARTED, clear_dates=True)
            return {"task_id": task_id, "killed": killed, "rejected": rejected, "cleared": cleared}

    # ── Queries ─────────────────────────────────────────────────────────

    def list_agents(self, status: AgentStatus | str | None = None) -> list[Agent]:
        with self._db() as db:
            agents = agent_store.list_agents(db)
        result = [self.status(a.task_id) if a.status.is_live else a for a in agents]
        if status:
            result = [a for a in result if a is not None and a.status == AgentStatus(status)]
        return [a for a in result if a is not None]

    def log_tail(self, task_id: str, lines: int = 50) -> str | None:
        with self._db() as db:
            return agent_store.tail_log(db, task_id, lines)

    def events(self, task_id: str, limit: int | None = None):
        with self._db() as db:
            return agent_store.get_agent_events(db, task_id, limit)

    def ready_tasks(self, prd_id: str | None = None) -> list[TaskNode]:
        graph = self._graph()
        if prd_id:
            subset = filter_graph(graph, prd_id=prd_id)
            return [n for n in ready_tasks(graph) if n.id in subset.tasks]
        return ready_tasks(graph)

    def bottlenecks(self, limit: int | None = None, include_done: bool = False) -> list[Impact]:
        ranked = rank_bottlenecks(self._graph(), include_done=include_done)
        return ranked[:limit] if limit else ranked

    def critical_path(self, task_id: str) -> dict:
        """Longest chain of dependents starting at ``task_id``."""
        graph = self._graph()
        if task_id not in graph.tasks:
            raise PreconditionError(f"Task not found: {task_id}", task_id=task_id, reason="task_not_found")
        length, path = longest_path(task_id, graph.tasks, graph.blocks)
        return {"task_id": task_id, "length": length, "path": path}

    def cycles(self) -> list[list[str]]:
        return detect_cycles(self._graph().tasks)

    def gantt(self, prd_id: str | None = None, now: datetime | None = None, display_cap_hours: float | None = None) -> dict:
        """Real schedule and Gantt metrics for a PRD (or the whole backlog)."""
        graph = self._graph()
        tasks = filter_graph(graph, prd_id=prd_id).tasks
        now = now or utc_now()
        t0 = compute_t0(tasks, now)
        schedule = get_task_schedules(tasks, self.config.effort, t0, now)
        metrics = calculate_gantt_metrics(tasks, self.config.effort, t0, now, display_cap_hours)
        problems = verify_gantt_metrics(schedule, metrics)
        for problem in problems:
            logger.warning("Gantt metrics inconsistent: %s", problem)
        return {
            "prd_id": prd_id,
            "t0": t0.isoformat(),
            "metrics": metrics.to_dict(),
            "schedule": {
                task_id: {
                    "start_hour": s.start_hour,
                    "end_hour": s.end_hour,
                    "duration_hours": s.duration_hours,
                    "overflow_hours": s.overflow_hours,
                    "status": tasks[task_id].status.value,
                }
                for task_id, s in schedule.items()
            },
            "problems": problems,
        }

    def shutdown(self):
        """Stop supervising. Agent processes keep running."""
        for task_id in list(self._watchdogs):
            self._forget_process(task_id)

