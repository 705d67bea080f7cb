"""Tests for git worktree operations."""

from pathlib import Path

import pytest

from backlog_conductor.core import agents as agent_store
from backlog_conductor.core import worktrees as worktrees_mod
from backlog_conductor.core.errors import PreconditionError, ResourceConflictError
from backlog_conductor.db.models import Agent, AgentStatus, Branching, Task
from backlog_conductor.integrations.git import (
    GitError,
    ahead_behind,
    branch_exists,
    is_clean,
    list_branches,
    run_git,
    status_porcelain,
    worktree_for_branch,
    worktree_list,
)


class TestGitHelpers:
    def test_run_git_error(self, git_repo):
        with pytest.raises(GitError) as exc:
            run_git(["checkout", "no-such-branch"], cwd=git_repo)
        assert exc.value.returncode != 0
        assert exc.value.stderr

    def test_status_porcelain_keeps_full_paths(self, git_repo):
        (git_repo / "README.md").write_text("changed\n")
        (git_repo / "zz.txt").write_text("new")
        assert status_porcelain(git_repo) == ["README.md", "zz.txt"]
        assert not is_clean(git_repo)

    def test_worktree_for_branch(self, git_repo):
        wt = worktree_for_branch(git_repo, "main")
        assert Path(wt.path).resolve() == git_repo.resolve()
        assert worktree_for_branch(git_repo, "other") is None

    def test_ahead_behind(self, git_repo, commit_file):
        run_git(["branch", "feature"], cwd=git_repo)
        commit_file(git_repo, "a.txt", "a")
        assert ahead_behind(git_repo, "feature", "main") == (0, 1)
        assert ahead_behind(git_repo, "main", "feature") == (1, 0)


class TestBranchHierarchy:
    def test_flat(self, config):
        task = Task("T1", prd_id="P1", epic_id="E1")
        assert worktrees_mod.branch_hierarchy(task, config) == ["main"]

    def test_epic_mode(self, config):
        config.branching = Branching.EPIC
        task = Task("T1", prd_id="P1", epic_id="E1")
        assert worktrees_mod.branch_hierarchy(task, config) == ["main", "prd/P1", "epic/E1"]
        assert worktrees_mod.parent_branch(task, config) == "epic/E1"

    def test_prd_mode_ignores_epic(self, config):
        config.branching = Branching.PRD
        task = Task("T1", prd_id="P1", epic_id="E1")
        assert worktrees_mod.parent_branch(task, config) == "prd/P1"

    def test_ensure_creates_missing(self, config, git_repo):
        config.branching = Branching.EPIC
        created = worktrees_mod.ensure_branch_hierarchy(git_repo, Task("T1", prd_id="P1", epic_id="E1"), config)
        assert created == ["prd/P1", "epic/E1"]
        assert worktrees_mod.ensure_branch_hierarchy(git_repo, Task("T2", prd_id="P1", epic_id="E1"), config) == []

    def test_missing_main(self, config, git_repo):
        config.main_branch = "trunk"
        with pytest.raises(PreconditionError, match="does not exist"):
            worktrees_mod.ensure_branch_hierarchy(git_repo, Task("T1"), config)


class TestWorktreeLifecycle:
    def test_create_worktree(self, config, git_repo):
        handle = worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        assert handle.branch == "task/T1"
        assert handle.base_branch == "main"
        assert handle.path == git_repo / ".worktrees" / "task-T1"
        assert handle.path.exists()
        assert handle.created and not handle.resumed

    def test_main_checkout_stays_clean(self, config, git_repo):
        worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        assert is_clean(git_repo)

    def test_existing_directory_conflicts_without_resume(self, config, git_repo):
        worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        with pytest.raises(ResourceConflictError) as exc:
            worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        assert exc.value.reason == "orphan_worktree"
        assert any("--resume" in step for step in exc.value.next_steps)

    def test_resume_reuses_directory(self, config, git_repo):
        first = worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        again = worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config, resume=True)
        assert again.path == first.path
        assert again.resumed and not again.created

    def test_branch_with_work_needs_resume(self, config, git_repo, commit_file):
        handle = worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        commit_file(handle.path, "work.txt", "progress")
        worktrees_mod.remove_worktree_for_task(git_repo, "T1", config, force=True, delete_branch_after=False)

        with pytest.raises(ResourceConflictError) as exc:
            worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        assert exc.value.reason == "orphan_branch"

        resumed = worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config, resume=True)
        assert (resumed.path / "work.txt").read_text() == "progress"

    def test_remove_worktree(self, config, git_repo):
        worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        result = worktrees_mod.remove_worktree_for_task(git_repo, "T1", config)
        assert result["removed"] is True
        assert result["branch_deleted"] is True
        assert not branch_exists(git_repo, "task/T1")

    def test_remove_no_worktree(self, config, git_repo):
        result = worktrees_mod.remove_worktree_for_task(git_repo, "T9", config)
        assert result["removed"] is False
        assert result["branch_deleted"] is False

    def test_worktree_status(self, config, git_repo, commit_file):
        handle = worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        commit_file(handle.path, "a.txt", "a")
        (handle.path / "scratch.txt").write_text("dirty")
        status = worktrees_mod.get_worktree_status(git_repo, "T1", config)
        assert status.exists
        assert not status.clean
        assert status.files == ["scratch.txt"]
        assert status.ahead == 1
        assert status.behind == 0

    def test_worktree_status_lists_modified_tracked_file(self, config, git_repo):
        handle = worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        (handle.path / "README.md").write_text("edited\n")
        (handle.path / "scratch.txt").write_text("dirty")
        status = worktrees_mod.get_worktree_status(git_repo, "T1", config)
        assert status.files == ["README.md", "scratch.txt"]

    def test_list_task_worktrees(self, config, git_repo):
        worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        worktrees_mod.create_worktree_for_task(git_repo, Task("T2"), config)
        listed = worktrees_mod.list_task_worktrees(git_repo, config)
        assert sorted(w["task_id"] for w in listed) == ["T1", "T2"]
        assert len(worktree_list(git_repo)) == 3


class TestOrphans:
    def test_find_orphans(self, config, git_repo, db):
        worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        run_git(["branch", "task/T3"], cwd=git_repo)
        agent_store.save_agent(
            db,
            Agent("T2", status=AgentStatus.COMPLETED, worktree_path=str(git_repo / ".worktrees" / "task-T2")),
        )

        report = worktrees_mod.find_orphans(git_repo, config, agent_store.list_agents(db))
        assert [w["task_id"] for w in report.orphan_worktrees] == ["T1"]
        assert report.ghost_agents == ["T2"]
        assert report.dangling_branches == ["task/T3"]

    def test_prune(self, config, git_repo, db):
        worktrees_mod.create_worktree_for_task(git_repo, Task("T1"), config)
        agent_store.save_agent(
            db, Agent("T2", status=AgentStatus.RUNNING, pid=999999, worktree_path="/nonexistent/task-T2")
        )

        dry = worktrees_mod.prune(git_repo, config, db, dry_run=True)
        assert len(dry["actions"]) == 2
        assert worktrees_mod.worktree_path_for(config, "T1").exists()

        result = worktrees_mod.prune(git_repo, config, db)
        assert not worktrees_mod.worktree_path_for(config, "T1").exists()
        ghost = agent_store.get_agent(db, "T2")
        assert ghost.worktree_path is None
        assert ghost.status == AgentStatus.ERROR
        assert result["orphan_worktrees"]
        assert "task/T1" in list_branches(git_repo, "task/*")
