"""Merge cascade: task -> epic -> prd -> main, with per-tier strategies.

Merges never touch the main checkout unless it already has the target
branch checked out. Otherwise they run in a scratch worktree under
``<worktree_dir>/_merge`` that is removed afterwards. A conflicting merge is
aborted before MergeConflictError is raised, so the target is either fully
updated or untouched.
"""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from backlog_conductor.config import Config
from backlog_conductor.core.errors import MergeConflictError, PreconditionError
from backlog_conductor.core.worktrees import MERGE_SCRATCH_DIR, epic_branch, prd_branch, task_branch
from backlog_conductor.db.models import Branching, MergeStrategy, SquashLevel, Task, TaskStatus
from backlog_conductor.integrations.git import (
    GitError,
    abort_merge,
    abort_rebase,
    branch_exists,
    commit,
    commit_all,
    commit_count,
    conflicted_files,
    is_clean,
    merge_ff_only,
    merge_no_ff,
    merge_squash,
    rebase,
    rev_parse,
    run_git,
    status_porcelain,
    worktree_add,
    worktree_add_detached,
    worktree_for_branch,
    worktree_remove,
)

logger = logging.getLogger(__name__)

_LEVEL_ORDER = {"task": 0, "epic": 1, "prd": 2}


@dataclass
class MergeConfig:
    to_epic: MergeStrategy = MergeStrategy.MERGE
    to_prd: MergeStrategy = MergeStrategy.SQUASH
    to_main: MergeStrategy = MergeStrategy.SQUASH
    squash_level: SquashLevel = SquashLevel.PRD
    auto_commit: bool = False
    branching: Branching = Branching.FLAT
    main_branch: str = "main"
    scratch_dir: Path | None = None

    @classmethod
    def from_config(cls, cfg: Config) -> "MergeConfig":
        return cls(
            to_epic=cfg.merge_to_epic,
            to_prd=cfg.merge_to_prd,
            to_main=cfg.merge_to_main,
            squash_level=cfg.squash_level,
            auto_commit=cfg.auto_commit,
            branching=cfg.branching,
            main_branch=cfg.main_branch,
            scratch_dir=cfg.worktree_base / MERGE_SCRATCH_DIR,
        )


@dataclass
class MergeResult:
    success: bool
    strategy: MergeStrategy
    source: str
    target: str
    head: str | None = None
    commits: int = 0
    conflicts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "strategy": self.strategy.value,
            "source": self.source,
            "target": self.target,
            "head": self.head,
            "commits": self.commits,
            "conflicts": self.conflicts,
        }


def effective_strategy(source_level: str, target_level: str, cfg: MergeConfig) -> MergeStrategy:
    """Strategy for merging a ``source_level`` branch into ``target_level``.

    Merges out of the squash level always squash. Merges out of a higher
    level never squash, since their history is already squashed; a
    configured squash there falls back to a merge commit.
    """
    configured = {"epic": cfg.to_epic, "prd": cfg.to_prd, "main": cfg.to_main}[target_level]
    source_rank = _LEVEL_ORDER[source_level]
    squash_rank = _LEVEL_ORDER[SquashLevel(cfg.squash_level).value]
    if source_rank == squash_rank:
        return MergeStrategy.SQUASH
    if source_rank > squash_rank and configured == MergeStrategy.SQUASH:
        return MergeStrategy.MERGE
    return configured


def _abort_and_raise(location: Path, source: str, target: str, error: GitError, rebasing: bool = False):
    files = conflicted_files(location)
    if rebasing:
        abort_rebase(location)
    else:
        abort_merge(location)
    if not files:
        raise error
    logger.warning("Merge of %s into %s conflicted on %s; aborted", source, target, files)
    raise MergeConflictError(
        f"Merging {source} into {target} conflicts in {len(files)} file(s)",
        files=files,
        source=source,
        target=target,
        reason="merge_conflict",
        next_steps=[
            f"Resolve by merging {target} into {source} and committing there",
            "Then reap again",
        ],
    )


def _scratch_path(repo: Path, scratch_dir: Path | None, label: str) -> Path:
    base = scratch_dir or (repo / ".worktrees" / MERGE_SCRATCH_DIR)
    base.mkdir(parents=True, exist_ok=True)
    return base / f"{label.replace('/', '-')}-{uuid.uuid4().hex[:8]}"


def merge_branch(
    repo_path: str | Path,
    source: str,
    target: str,
    strategy: MergeStrategy,
    message: str | None = None,
    scratch_dir: Path | None = None,
) -> MergeResult:
    """Merge ``source`` into ``target`` with the given strategy."""
    repo = Path(repo_path)
    strategy = MergeStrategy(strategy)
    for branch in (source, target):
        if not branch_exists(repo, branch):
            raise PreconditionError(f"Branch does not exist: {branch}", reason="missing_branch")

    commits = commit_count(repo, f"{target}..{source}")
    if commits == 0:
        logger.info("Nothing to merge from %s into %s", source, target)
        return MergeResult(True, strategy, source, target, head=rev_parse(repo, target))

    message = message or f"Merge {source} into {target}"
    scratch: list[Path] = []
    checked_out = worktree_for_branch(repo, target)
    if checked_out is not None:
        location = Path(checked_out.path)
        if not is_clean(location):
            raise PreconditionError(
                f"{target} is checked out at {location} with uncommitted changes",
                reason="target_dirty",
                next_steps=[f"Commit or stash the changes in {location}"],
            )
    else:
        location = _scratch_path(repo, scratch_dir, target)
        worktree_add(repo, location, target, create_branch=False)
        scratch.append(location)

    try:
        if strategy == MergeStrategy.SQUASH:
            try:
                merge_squash(location, source)
            except GitError as e:
                _abort_and_raise(location, source, target, e)
            if run_git(["diff", "--cached", "--name-only"], cwd=location):
                commit(location, message)
        elif strategy == MergeStrategy.MERGE:
            try:
                merge_no_ff(location, source, message)
            except GitError as e:
                _abort_and_raise(location, source, target, e)
        else:
            replay = _scratch_path(repo, scratch_dir, source)
            worktree_add_detached(repo, replay, source)
            scratch.append(replay)
            try:
                rebase(replay, target)
            except GitError as e:
                _abort_and_raise(replay, source, target, e, rebasing=True)
            merge_ff_only(location, rev_parse(replay))
        head = rev_parse(location)
    finally:
        for path in scratch:
            try:
                worktree_remove(repo, path, force=True)
            except GitError as e:
                logger.warning("Could not remove scratch worktree %s: %s", path, e)

    logger.info("Merged %s into %s (%s, %d commit(s))", source, target, strategy.value, commits)
    return MergeResult(True, strategy, source, target, head=head, commits=commits)


def preflight(
    repo_path: str | Path,
    source_path: str | Path | None,
    target: str,
    auto_commit: bool = False,
    message: str = "Uncommitted agent work",
    task_id: str | None = None,
) -> bool:
    """Check a merge can start. Returns True if work had to be auto-committed."""
    if not branch_exists(repo_path, target):
        raise PreconditionError(
            f"Target branch does not exist: {target}",
            task_id=task_id,
            reason="missing_target",
        )
    if source_path is None or not Path(source_path).exists():
        return False

    dirty = status_porcelain(source_path)
    if not dirty:
        return False
    if auto_commit:
        committed = commit_all(source_path, message)
        logger.info("Auto-committed %d changed path(s) in %s", len(dirty), source_path)
        return committed
    raise PreconditionError(
        f"Worktree has {len(dirty)} uncommitted change(s): {', '.join(dirty[:5])}",
        task_id=task_id,
        reason="dirty_worktree",
        next_steps=[
            f"Commit the changes in {source_path}",
            "or set BC_AUTO_COMMIT=1 to commit them automatically on reap",
        ],
    )


def _all_terminal(tasks: list[Task], finishing: str) -> bool:
    return all(t.id == finishing or t.status.is_terminal for t in tasks)


def cascade_task(repo_path: str | Path, task: Task, backlog, cfg: Config) -> list[MergeResult]:
    """Merge a finished task upward as far as its completed containers allow.

    The task itself counts as finished. An epic (or prd) whose tasks are all
    terminal is merged into its parent branch and marked Auto-Done through
    ``backlog``.
    """
    mcfg = MergeConfig.from_config(cfg)
    repo = Path(repo_path)
    results = []

    use_prd = mcfg.branching in (Branching.PRD, Branching.EPIC) and task.prd_id
    use_epic = mcfg.branching == Branching.EPIC and task.epic_id
    prd_target = prd_branch(task.prd_id) if use_prd else mcfg.main_branch

    if use_epic:
        target, target_level = epic_branch(task.epic_id), "epic"
    elif use_prd:
        target, target_level = prd_target, "prd"
    else:
        target, target_level = mcfg.main_branch, "main"

    results.append(
        merge_branch(
            repo,
            task_branch(task.id),
            target,
            effective_strategy("task", target_level, mcfg),
            message=f"{task.id}: {task.title}",
            scratch_dir=mcfg.scratch_dir,
        )
    )

    if use_epic:
        siblings = [t for t in backlog.list_tasks(prd_id=task.prd_id) if t.epic_id == task.epic_id]
        if not _all_terminal(siblings, task.id):
            return results
        level = "prd" if use_prd else "main"
        results.append(
            merge_branch(
                repo,
                target,
                prd_target,
                effective_strategy("epic", level, mcfg),
                message=f"Epic {task.epic_id} complete",
                scratch_dir=mcfg.scratch_dir,
            )
        )
        backlog.update_epic_status(task.epic_id, TaskStatus.AUTO_DONE)
        logger.info("Epic %s merged into %s and marked Auto-Done", task.epic_id, prd_target)

    if use_prd:
        prd_tasks = backlog.list_tasks(prd_id=task.prd_id)
        if not _all_terminal(prd_tasks, task.id):
            return results
        results.append(
            merge_branch(
                repo,
                prd_target,
                mcfg.main_branch,
                effective_strategy("prd", "main", mcfg),
                message=f"PRD {task.prd_id} complete",
                scratch_dir=mcfg.scratch_dir,
            )
        )
        backlog.update_prd_status(task.prd_id, TaskStatus.AUTO_DONE)
        logger.info("PRD %s merged into %s and marked Auto-Done", task.prd_id, mcfg.main_branch)

    return results
