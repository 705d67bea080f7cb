"""Tests for the agent lifecycle conductor.

Agents are small shell scripts run in real worktrees of a throwaway repo.
"""

import stat
import subprocess
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from backlog_conductor.core import agents as agent_store
from backlog_conductor.core import tasks as tasks_mod
from backlog_conductor.core import worktrees as worktrees_mod
from backlog_conductor.core.conductor import ALLOWED_TRANSITIONS, Conductor, build_mission
from backlog_conductor.core.errors import (
    CycleError,
    MergeConflictError,
    PreconditionError,
    ProcessError,
    ResourceConflictError,
)
from backlog_conductor.core.graph import build_graph
from backlog_conductor.db.engine import utc_now
from backlog_conductor.db.models import Agent, AgentStatus, Task, TaskStatus
from backlog_conductor.integrations.git import branch_exists, is_clean

A = AgentStatus

COMMIT_WORK = """cat > /dev/null
echo "feature" > feature.txt
git add feature.txt
git commit -q -m "agent work"
echo "finished the task"
"""

SLEEP = "cat > /dev/null\nexec sleep 30\n"

FAIL = 'cat > /dev/null\necho "boom: tests failed"\nexit 2\n'


@pytest.fixture
def agent_script(tmp_path, config):
    """Install a shell script as the agent command."""

    def _install(body: str):
        path = tmp_path / "bin" / "agent"
        path.parent.mkdir(exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IEXEC)
        config.agent_command = str(path)
        return path

    return _install


@pytest.fixture
def conductor(config):
    c = Conductor(config, notifier=MagicMock())
    c.poll_interval = 0.05
    yield c
    for agent in c.list_agents():
        if agent.status.is_live:
            c.kill(agent.task_id)
    c.shutdown()


class TestMission:
    def test_build_mission(self):
        tasks = [Task("T1", title="Schema", status=TaskStatus.DONE), Task("T2", title="API", blocked_by=["T1"])]
        graph = build_graph(tasks + [Task("T3", title="UI", blocked_by=["T2"])])
        text = build_mission(tasks[1], graph, None, instructions="Use FastAPI")
        assert text.startswith("# Task: API")
        assert "- Schema (T1): Done" in text
        assert "unblocks: T3" in text
        assert "Use FastAPI" in text

    def test_terminal_states_have_no_exits(self):
        assert ALLOWED_TRANSITIONS[A.REAPED] == frozenset()
        assert ALLOWED_TRANSITIONS[A.REJECTED] == frozenset()
        assert A.REAPED not in ALLOWED_TRANSITIONS[A.RUNNING]


class TestSpawnPreconditions:
    def test_blocked_task_names_its_blocker(self, db, conductor, agent_script, config):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "Schema", task_id="T1")
        tasks_mod.create_task(db, "API", task_id="T2", blocked_by=["T1"])

        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T2")
        assert exc.value.reason == "blocked"
        assert "T1" in exc.value.message
        assert conductor.status("T2") is None
        assert not worktrees_mod.worktree_path_for(config, "T2").exists()

    def test_cycle(self, db, conductor, agent_script):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "A", task_id="A", blocked_by=["B"])
        tasks_mod.create_task(db, "B", task_id="B", blocked_by=["A"])
        with pytest.raises(CycleError) as exc:
            conductor.spawn("A")
        assert exc.value.cycles

    def test_unknown_task(self, conductor):
        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T404")
        assert exc.value.reason == "task_not_found"

    def test_finished_task(self, db, conductor, agent_script):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "Done already", task_id="T1", status=TaskStatus.DONE)
        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T1")
        assert exc.value.reason == "task_finished"

    def test_dirty_main_checkout(self, db, conductor, agent_script, git_repo):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "A", task_id="T1")
        (git_repo / "stray.txt").write_text("x")
        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T1")
        assert exc.value.reason == "dirty_repo"

    def test_dirty_main_checkout_names_modified_file(self, db, conductor, agent_script, git_repo):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "A", task_id="T1")
        (git_repo / "README.md").write_text("edited\n")
        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T1")
        assert exc.value.message.endswith(": README.md")

    def test_agent_command_missing(self, db, conductor, config):
        config.agent_command = "no-such-agent-binary-xyz"
        tasks_mod.create_task(db, "A", task_id="T1")
        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T1")
        assert exc.value.reason == "agent_unavailable"

    def test_at_most_one_live_agent_per_task(self, db, conductor, agent_script):
        agent_script(SLEEP)
        tasks_mod.create_task(db, "A", task_id="T1")
        first = conductor.spawn("T1")
        assert first.status == A.RUNNING
        assert first.pid

        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T1")
        assert exc.value.reason == "agent_exists"

    def test_max_parallel(self, db, conductor, agent_script, config):
        agent_script(SLEEP)
        config.max_parallel = 1
        tasks_mod.create_task(db, "A", task_id="T1")
        tasks_mod.create_task(db, "B", task_id="T2")
        conductor.spawn("T1")
        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T2")
        assert exc.value.reason == "max_parallel"

    def test_max_parallel_holds_under_concurrent_spawns(self, db, conductor, agent_script, config):
        agent_script(SLEEP)
        config.max_parallel = 1
        ids = ["T0", "T1", "T2", "T3"]
        for task_id in ids:
            tasks_mod.create_task(db, task_id, task_id=task_id)

        barrier = threading.Barrier(len(ids))
        started, refused = [], []

        def _spawn(task_id):
            barrier.wait()
            try:
                started.append(conductor.spawn(task_id).task_id)
            except PreconditionError as e:
                refused.append(e.reason)

        threads = [threading.Thread(target=_spawn, args=(t,)) for t in ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(started) == 1
        assert refused == ["max_parallel"] * 3
        assert len([a for a in conductor.list_agents() if a.status.is_live]) == 1

    def test_record_written_elsewhere_refuses_first_spawn(self, db, conductor):
        agent_store.save_agent(db, Agent("T1", status=A.SPAWNED, spawned_at=utc_now()))
        with pytest.raises(PreconditionError) as exc:
            with conductor._db() as conn:
                conductor._record_spawn(conn, Agent("T1", status=A.SPAWNED), None)
        assert exc.value.reason == "agent_exists"
        assert agent_store.get_agent(db, "T1").pid is None


class TestLifecycle:
    def test_spawn_wait_reap_merges_to_main(self, db, conductor, agent_script, config, git_repo):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "Feature", task_id="T1")

        agent = conductor.spawn("T1")
        assert agent.branch == "task/T1"
        assert tasks_mod.get_task(db, "T1").status == TaskStatus.IN_PROGRESS
        assert (config.agent_dir / "T1" / "mission.md").read_text().startswith("# Task: Feature")

        agent = conductor.wait("T1", timeout=20)
        assert agent.status == A.COMPLETED
        assert agent.exit_code == 0
        assert "finished the task" in agent.result_summary

        reaped = conductor.reap("T1")
        assert reaped.status == A.REAPED
        assert tasks_mod.get_task(db, "T1").status == TaskStatus.DONE
        assert (git_repo / "feature.txt").read_text() == "feature\n"
        assert not worktrees_mod.worktree_path_for(config, "T1").exists()
        assert not branch_exists(git_repo, "task/T1")
        assert is_clean(git_repo)

        assert conductor.reap("T1").status == A.REAPED
        events = [e.event_type for e in conductor.events("T1")]
        assert events == ["spawned", "running", "completed", "reaped"]

    def test_failed_agent_blocks_task(self, db, conductor, agent_script, config):
        agent_script(FAIL)
        tasks_mod.create_task(db, "Flaky", task_id="T1")
        conductor.spawn("T1")
        agent = conductor.wait("T1", timeout=20)
        assert agent.status == A.ERROR
        assert agent.exit_code == 2

        with pytest.raises(ProcessError) as exc:
            conductor.reap("T1")
        assert "boom: tests failed" in exc.value.output
        assert any("--resume" in step for step in exc.value.next_steps)
        assert tasks_mod.get_task(db, "T1").status == TaskStatus.BLOCKED
        assert worktrees_mod.worktree_path_for(config, "T1").exists()
        assert conductor.status("T1").status == A.REAPED
        events = [c.args[0] for c in conductor.notifier.notify.call_args_list]
        assert "reap_failed" in events

    def test_resume_after_failure(self, db, conductor, agent_script, config):
        agent_script(FAIL)
        tasks_mod.create_task(db, "Flaky", task_id="T1")
        conductor.spawn("T1")
        conductor.wait("T1", timeout=20)
        with pytest.raises(ProcessError):
            conductor.reap("T1")

        agent_script(COMMIT_WORK)
        with pytest.raises(ResourceConflictError):
            conductor.spawn("T1")
        agent = conductor.spawn("T1", resume=True)
        assert agent.resumed
        assert conductor.wait("T1", timeout=20).status == A.COMPLETED

    def test_unreaped_agent_blocks_respawn(self, db, conductor, agent_script):
        agent_script(FAIL)
        tasks_mod.create_task(db, "Flaky", task_id="T1")
        conductor.spawn("T1")
        conductor.wait("T1", timeout=20)
        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T1")
        assert exc.value.reason == "agent_not_reaped"

    def test_kill_is_idempotent(self, db, conductor, agent_script, config):
        agent_script(SLEEP)
        tasks_mod.create_task(db, "A", task_id="T1")
        conductor.spawn("T1")

        killed = conductor.kill("T1")
        assert killed.status == A.KILLED
        assert killed.kill_reason == "operator"
        assert conductor.kill("T1").status == A.KILLED
        assert worktrees_mod.worktree_path_for(config, "T1").exists()

    def test_wall_clock_timeout(self, db, conductor, agent_script):
        agent_script(SLEEP)
        tasks_mod.create_task(db, "Slow", task_id="T1")
        conductor.spawn("T1", timeout=1)
        agent = conductor.wait("T1", timeout=20)
        assert agent.status == A.KILLED
        assert agent.kill_reason == "timeout"

    def test_detached_agent_reconciled_on_status(self, db, conductor, agent_script):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "Feature", task_id="T1")
        conductor.spawn("T1", supervise=False)
        agent = conductor.wait("T1", timeout=20)
        assert agent.status == A.COMPLETED

    def test_merge_conflict_keeps_agent_completed(self, db, conductor, agent_script, git_repo, commit_file):
        agent_script('cat > /dev/null\necho agent > README.md\ngit commit -q -am "agent edit"\n')
        tasks_mod.create_task(db, "Docs", task_id="T1")
        conductor.spawn("T1")
        conductor.wait("T1", timeout=20)
        commit_file(git_repo, "README.md", "main edit\n")

        with pytest.raises(MergeConflictError) as exc:
            conductor.reap("T1")
        assert exc.value.files == ["README.md"]
        assert conductor.status("T1").status == A.COMPLETED
        assert tasks_mod.get_task(db, "T1").status == TaskStatus.IN_PROGRESS
        assert is_clean(git_repo)
        assert conductor.notifier.notify.call_args.args[0] == "merge_conflict"


class TestRejectResetClear:
    def test_reject_discards_work(self, db, conductor, agent_script, config, git_repo):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "Feature", task_id="T1")
        conductor.spawn("T1")
        conductor.wait("T1", timeout=20)

        rejected = conductor.reject("T1", "wrong approach")
        assert rejected.status == A.REJECTED
        assert rejected.reject_reason == "wrong approach"
        assert not worktrees_mod.worktree_path_for(config, "T1").exists()
        assert not branch_exists(git_repo, "task/T1")
        assert not (git_repo / "feature.txt").exists()

        with pytest.raises(PreconditionError) as exc:
            conductor.reap("T1")
        assert exc.value.reason == "rejected"

    def test_spawn_again_after_reject(self, db, conductor, agent_script):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "Feature", task_id="T1")
        conductor.spawn("T1")
        conductor.wait("T1", timeout=20)
        conductor.reject("T1")

        again = conductor.spawn("T1")
        assert again.status == A.RUNNING
        assert not again.resumed
        assert conductor.wait("T1", timeout=20).status == A.COMPLETED

    def test_reset_running_agent(self, db, conductor, agent_script, config, git_repo):
        agent_script(SLEEP)
        tasks_mod.create_task(db, "A", task_id="T1")
        conductor.spawn("T1")

        result = conductor.reset("T1")
        assert result == {"task_id": "T1", "killed": True, "rejected": True, "cleared": True}
        assert conductor.status("T1") is None
        assert tasks_mod.get_task(db, "T1").status == TaskStatus.NOT_STARTED
        assert tasks_mod.get_task(db, "T1").started_at is None
        assert not branch_exists(git_repo, "task/T1")
        assert not (config.agent_dir / "T1").exists()

    def test_reject_after_failed_reap_keeps_work(self, db, conductor, agent_script, config, git_repo):
        agent_script('cat > /dev/null\necho wip > wip.txt\ngit add wip.txt\ngit commit -q -m wip\nexit 2\n')
        tasks_mod.create_task(db, "Flaky", task_id="T1")
        conductor.spawn("T1")
        conductor.wait("T1", timeout=20)
        with pytest.raises(ProcessError):
            conductor.reap("T1")

        with pytest.raises(PreconditionError) as exc:
            conductor.reject("T1")
        assert exc.value.reason == "already_reaped"
        assert worktrees_mod.worktree_path_for(config, "T1").exists()
        assert branch_exists(git_repo, "task/T1")
        assert conductor.status("T1").status == A.REAPED

    def test_spawn_after_reap_needs_reset(self, db, conductor, agent_script):
        agent_script(COMMIT_WORK)
        tasks_mod.create_task(db, "Feature", task_id="T1")
        conductor.spawn("T1")
        conductor.wait("T1", timeout=20)
        conductor.reap("T1")

        with pytest.raises(PreconditionError) as exc:
            conductor.spawn("T1")
        assert exc.value.reason == "task_finished"

        result = conductor.reset("T1")
        assert result["rejected"] is False
        again = conductor.spawn("T1")
        assert again.status == A.RUNNING
        assert conductor.wait("T1", timeout=20).status == A.COMPLETED

    def test_spawn_after_failed_reap_and_reset(self, db, conductor, agent_script, git_repo):
        agent_script(FAIL)
        tasks_mod.create_task(db, "Flaky", task_id="T1")
        conductor.spawn("T1")
        conductor.wait("T1", timeout=20)
        with pytest.raises(ProcessError):
            conductor.reap("T1")

        conductor.reset("T1")
        assert not branch_exists(git_repo, "task/T1")
        agent_script(COMMIT_WORK)
        again = conductor.spawn("T1")
        assert not again.resumed
        assert conductor.wait("T1", timeout=20).status == A.COMPLETED

    def test_spawn_after_reset_of_running_agent(self, db, conductor, agent_script):
        agent_script(SLEEP)
        tasks_mod.create_task(db, "A", task_id="T1")
        conductor.spawn("T1")
        conductor.reset("T1")

        again = conductor.spawn("T1")
        assert again.status == A.RUNNING
        events = [e.event_type for e in conductor.events("T1")]
        assert events[-2:] == ["spawned", "running"]

    def test_clear_live_agent_refused(self, db, conductor, agent_script):
        agent_script(SLEEP)
        tasks_mod.create_task(db, "A", task_id="T1")
        conductor.spawn("T1")
        with pytest.raises(PreconditionError) as exc:
            conductor.clear("T1")
        assert exc.value.reason == "still_running"

    def test_clear_missing(self, conductor):
        assert conductor.clear("T404") is False


class TestReconcile:
    def _record(self, db, config, **kwargs):
        log_dir = config.agent_dir / "T1"
        log_dir.mkdir(parents=True, exist_ok=True)
        agent = Agent("T1", log_file=str(log_dir / "agent.log"), spawned_at=utc_now(), **kwargs)
        return agent_store.save_agent(db, agent)

    def _dead_pid(self):
        proc = subprocess.Popen(["true"])
        proc.wait()
        return proc.pid

    def test_dead_process_with_exit_file(self, db, conductor, config):
        self._record(db, config, status=A.RUNNING, pid=self._dead_pid())
        (config.agent_dir / "T1" / "exit_code").write_text("0\n")
        assert conductor.status("T1").status == A.COMPLETED

    def test_dead_process_without_exit_file(self, db, conductor, config):
        self._record(db, config, status=A.RUNNING, pid=self._dead_pid())
        agent = conductor.status("T1")
        assert agent.status == A.ERROR
        assert agent.exit_code is None

    def test_stale_spawn_record(self, db, conductor, config):
        agent = self._record(db, config, status=A.SPAWNED)
        agent.spawned_at = utc_now() - timedelta(minutes=5)
        agent_store.save_agent(db, agent)
        assert conductor.status("T1").status == A.ERROR

    def test_fresh_spawn_record_left_alone(self, db, conductor, config):
        self._record(db, config, status=A.SPAWNED)
        assert conductor.status("T1").status == A.SPAWNED


class TestQueries:
    def _backlog(self, db):
        tasks_mod.create_prd(db, "P1")
        tasks_mod.create_task(db, "Schema", task_id="T1", prd_id="P1", effort="1h", status=TaskStatus.DONE)
        tasks_mod.create_task(db, "API", task_id="T2", prd_id="P1", effort="2h", blocked_by=["T1"])
        tasks_mod.create_task(db, "UI", task_id="T3", prd_id="P1", effort="M", blocked_by=["T2"])

    def test_ready_and_bottlenecks(self, db, conductor):
        self._backlog(db)
        assert [n.id for n in conductor.ready_tasks("P1")] == ["T2"]
        assert [i.id for i in conductor.bottlenecks()] == ["T2"]
        assert conductor.critical_path("T1") == {"task_id": "T1", "length": 3, "path": ["T1", "T2", "T3"]}
        assert conductor.cycles() == []

    def test_critical_path_unknown(self, conductor):
        with pytest.raises(PreconditionError):
            conductor.critical_path("T404")

    def test_gantt(self, db, conductor):
        self._backlog(db)
        data = conductor.gantt("P1")
        assert set(data["schedule"]) == {"T1", "T2", "T3"}
        assert data["metrics"]["task_count"] == 3
        assert data["prd_id"] == "P1"
        assert data["problems"] == []
