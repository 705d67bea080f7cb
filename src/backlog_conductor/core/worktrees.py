"""Git worktree lifecycle management tied to tasks.

Each task gets ``task/<id>`` checked out under ``<repo>/<worktree_dir>/task-<id>``.
The branch is cut from its parent branch, which depends on the branching
mode: main (flat), ``prd/<id>`` (prd) or ``epic/<id>`` (epic).
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from backlog_conductor.config import Config
from backlog_conductor.core import agents as agent_store
from backlog_conductor.core.errors import PreconditionError, ResourceConflictError
from backlog_conductor.db.models import AgentStatus, Branching, Task
from backlog_conductor.integrations.git import (
    GitError,
    ahead_behind,
    branch_exists,
    create_branch,
    delete_branch,
    list_branches,
    run_git,
    status_porcelain,
    worktree_add,
    worktree_list,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)

MERGE_SCRATCH_DIR = "_merge"


@dataclass
class WorktreeHandle:
    task_id: str
    path: Path
    branch: str
    base_branch: str
    created: bool = True
    resumed: bool = False


@dataclass
class WorktreeStatus:
    task_id: str
    path: str
    branch: str
    exists: bool
    clean: bool = True
    ahead: int = 0
    behind: int = 0
    files: list[str] = field(default_factory=list)


@dataclass
class OrphanReport:
    orphan_worktrees: list[dict] = field(default_factory=list)
    ghost_agents: list[str] = field(default_factory=list)
    dangling_branches: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.orphan_worktrees or self.ghost_agents or self.dangling_branches)


def task_branch(task_id: str) -> str:
    return f"task/{task_id}"


def epic_branch(epic_id: str) -> str:
    return f"epic/{epic_id}"


def prd_branch(prd_id: str) -> str:
    return f"prd/{prd_id}"


def worktree_path_for(cfg: Config, task_id: str) -> Path:
    return cfg.worktree_base / f"task-{task_id}"


def branch_hierarchy(task: Task, cfg: Config) -> list[str]:
    """Branch chain from main down to the task's parent branch."""
    chain = [cfg.main_branch]
    if cfg.branching in (Branching.PRD, Branching.EPIC) and task.prd_id:
        chain.append(prd_branch(task.prd_id))
    if cfg.branching == Branching.EPIC and task.epic_id:
        chain.append(epic_branch(task.epic_id))
    return chain


def parent_branch(task: Task, cfg: Config) -> str:
    return branch_hierarchy(task, cfg)[-1]


def ensure_branch_hierarchy(repo_path: str | Path, task: Task, cfg: Config) -> list[str]:
    """Create any missing prd/epic branches. Returns the branches created."""
    chain = branch_hierarchy(task, cfg)
    if not branch_exists(repo_path, chain[0]):
        raise PreconditionError(
            f"Main branch '{chain[0]}' does not exist",
            task_id=task.id,
            reason="missing_main_branch",
            next_steps=[f"Create '{chain[0]}' or set BC_MAIN_BRANCH"],
        )

    created = []
    for upstream, branch in zip(chain, chain[1:]):
        if not branch_exists(repo_path, branch):
            create_branch(repo_path, branch, upstream)
            logger.info("Created branch %s from %s", branch, upstream)
            created.append(branch)
    return created


def _exclude_worktree_dir(repo_path: Path, worktree_dir: str) -> None:
    """Keep the worktree directory out of the main checkout's status."""
    common = Path(run_git(["rev-parse", "--git-common-dir"], cwd=repo_path))
    if not common.is_absolute():
        common = repo_path / common
    exclude = common / "info" / "exclude"
    entry = f"/{worktree_dir.strip('/')}/"
    existing = exclude.read_text() if exclude.exists() else ""
    if entry not in existing.splitlines():
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with open(exclude, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(entry + "\n")


def _registered(repo_path: Path, path: Path) -> bool:
    target = path.resolve()
    return any(Path(wt.path).resolve() == target for wt in worktree_list(repo_path))


def create_worktree_for_task(
    repo_path: str | Path,
    task: Task,
    cfg: Config,
    resume: bool = False,
) -> WorktreeHandle:
    """Create (or, when resuming, reattach) the worktree for a task.

    A leftover directory or a branch that already carries work is only
    reused when ``resume`` is set; otherwise ResourceConflictError is raised
    and nothing is touched.
    """
    repo = Path(repo_path)
    branch = task_branch(task.id)
    base = parent_branch(task, cfg)
    wt_path = worktree_path_for(cfg, task.id)

    if wt_path.exists():
        if resume and _registered(repo, wt_path):
            logger.info("Resuming existing worktree %s", wt_path)
            return WorktreeHandle(task.id, wt_path, branch, base, created=False, resumed=True)
        raise ResourceConflictError(
            f"Worktree directory already exists: {wt_path}",
            task_id=task.id,
            reason="orphan_worktree",
            next_steps=[
                f"bcon agent spawn {task.id} --resume  (continue in the existing worktree)",
                f"bcon agent reset {task.id}  (discard it and start over)",
            ],
        )

    ensure_branch_hierarchy(repo, task, cfg)
    _exclude_worktree_dir(repo, cfg.worktree_dir)
    wt_path.parent.mkdir(parents=True, exist_ok=True)

    if branch_exists(repo, branch):
        ahead, _ = ahead_behind(repo, branch, base)
        if ahead and not resume:
            raise ResourceConflictError(
                f"Branch {branch} already has {ahead} commit(s) not on {base}",
                task_id=task.id,
                reason="orphan_branch",
                next_steps=[
                    f"bcon agent spawn {task.id} --resume  (reattach the branch)",
                    f"bcon agent reset {task.id}  (delete the branch and start over)",
                ],
            )
        worktree_add(repo, wt_path, branch, create_branch=False)
        logger.info("Reattached %s at %s", branch, wt_path)
        return WorktreeHandle(task.id, wt_path, branch, base, created=False, resumed=resume)

    worktree_add(repo, wt_path, branch, base, create_branch=True)
    logger.info("Created worktree %s on %s from %s", wt_path, branch, base)
    return WorktreeHandle(task.id, wt_path, branch, base)


def remove_worktree_for_task(
    repo_path: str | Path,
    task_id: str,
    cfg: Config,
    force: bool = False,
    delete_branch_after: bool = True,
) -> dict:
    """Remove a task's worktree and, optionally, its branch."""
    repo = Path(repo_path)
    wt_path = worktree_path_for(cfg, task_id)
    branch = task_branch(task_id)
    removed = False

    if wt_path.exists():
        worktree_remove(repo, wt_path, force=force)
        removed = True
    else:
        worktree_prune(repo)

    branch_deleted = False
    if delete_branch_after and branch_exists(repo, branch):
        # Squash merges leave the branch unmerged by ancestry, so -d would refuse.
        delete_branch(repo, branch, force=True)
        branch_deleted = True

    logger.info("Removed worktree for %s (dir=%s, branch=%s)", task_id, removed, branch_deleted)
    return {"task_id": task_id, "removed": removed, "path": str(wt_path), "branch_deleted": branch_deleted}


def get_worktree_status(repo_path: str | Path, task_id: str, cfg: Config, base: str | None = None) -> WorktreeStatus:
    """Cleanliness and ahead/behind counts of a task's worktree against its base."""
    repo = Path(repo_path)
    wt_path = worktree_path_for(cfg, task_id)
    branch = task_branch(task_id)
    if not wt_path.exists():
        return WorktreeStatus(task_id=task_id, path=str(wt_path), branch=branch, exists=False)

    files = status_porcelain(wt_path)
    ahead = behind = 0
    if branch_exists(repo, branch):
        ahead, behind = ahead_behind(repo, branch, base or cfg.main_branch)
    return WorktreeStatus(
        task_id=task_id,
        path=str(wt_path),
        branch=branch,
        exists=True,
        clean=not files,
        ahead=ahead,
        behind=behind,
        files=files,
    )


def list_task_worktrees(repo_path: str | Path, cfg: Config) -> list[dict]:
    """Registered worktrees living under the worktree directory, keyed by task."""
    base = cfg.worktree_base.resolve()
    result = []
    for wt in worktree_list(repo_path):
        path = Path(wt.path)
        if path.parent.resolve() != base or not path.name.startswith("task-"):
            continue
        result.append(
            {
                "task_id": path.name[len("task-"):],
                "path": wt.path,
                "branch": wt.branch,
                "head": wt.head,
                "exists": path.exists(),
            }
        )
    return result


def find_orphans(repo_path: str | Path, cfg: Config, agents: list) -> OrphanReport:
    """Compare git state with agent records.

    - orphan worktrees: a task worktree with no agent record
    - ghost agents: a non-final record whose worktree directory is gone
    - dangling branches: ``task/*`` branches with neither worktree nor record
    """
    by_task = {a.task_id: a for a in agents}
    report = OrphanReport()

    worktrees = list_task_worktrees(repo_path, cfg)
    with_worktree = set()
    for wt in worktrees:
        with_worktree.add(wt["task_id"])
        if wt["task_id"] not in by_task:
            report.orphan_worktrees.append(wt)

    for agent in agents:
        if agent.status in (AgentStatus.REAPED, AgentStatus.REJECTED):
            continue
        if agent.worktree_path and not Path(agent.worktree_path).exists():
            report.ghost_agents.append(agent.task_id)

    for branch in list_branches(repo_path, "task/*"):
        task_id = branch[len("task/"):]
        if task_id not in with_worktree and task_id not in by_task:
            report.dangling_branches.append(branch)

    return report


def prune(repo_path: str | Path, cfg: Config, db: sqlite3.Connection, dry_run: bool = False) -> dict:
    """Reconcile worktrees and agent records.

    Removes orphan worktrees, detaches ghost agents from their missing
    worktree (live ones are marked error) and prunes git's worktree list.
    Dangling branches are only reported; they may hold unmerged work.
    """
    report = find_orphans(repo_path, cfg, agent_store.list_agents(db))
    actions = []

    if not dry_run:
        worktree_prune(repo_path)

    for wt in report.orphan_worktrees:
        actions.append(f"remove worktree {wt['path']}")
        if not dry_run:
            try:
                worktree_remove(repo_path, wt["path"], force=True)
            except GitError as e:
                logger.warning("Could not remove orphan worktree %s: %s", wt["path"], e)
                actions[-1] += f" (failed: {e})"

    for task_id in report.ghost_agents:
        agent = agent_store.get_agent(db, task_id)
        actions.append(f"clear worktree of agent {task_id}")
        if dry_run or agent is None:
            continue
        agent.worktree_path = None
        if agent.status.is_live:
            agent.status = AgentStatus.ERROR
            agent.kill_reason = "worktree_missing"
        agent_store.save_agent(db, agent)
        agent_store.log_agent_event(db, task_id, "pruned", "worktree directory missing")

    return {
        "dry_run": dry_run,
        "orphan_worktrees": [wt["path"] for wt in report.orphan_worktrees],
        "ghost_agents": report.ghost_agents,
        "dangling_branches": report.dangling_branches,
        "actions": actions,
    }
