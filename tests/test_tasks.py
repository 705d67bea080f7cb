"""Tests for the backlog store and status vocabulary."""

import pytest

from backlog_conductor.core import tasks as tasks_mod
from backlog_conductor.core.lexicon import normalize_status, require_status
from backlog_conductor.db.models import Priority, TaskStatus


class TestStatusVocabulary:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("todo", TaskStatus.NOT_STARTED),
            ("Not Started", TaskStatus.NOT_STARTED),
            ("in-progress", TaskStatus.IN_PROGRESS),
            ("WIP", TaskStatus.IN_PROGRESS),
            ("auto_done", TaskStatus.AUTO_DONE),
            ("canceled", TaskStatus.CANCELLED),
            ("complete", TaskStatus.DONE),
        ],
    )
    def test_aliases(self, raw, expected):
        assert normalize_status(raw) == expected

    def test_unknown(self):
        assert normalize_status("someday") is None
        with pytest.raises(ValueError, match="Invalid status"):
            require_status("someday")


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login", effort="2h", priority="high")
        assert task.id == "T001"
        assert task.status == TaskStatus.NOT_STARTED
        assert task.priority == Priority.HIGH
        assert task.effort == "2h"

    def test_sequential_ids(self, db):
        tasks_mod.create_task(db, "One")
        tasks_mod.create_task(db, "Explicit", task_id="T010")
        assert tasks_mod.create_task(db, "Next").id == "T011"

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "T999") is None

    def test_list_tasks(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B")
        assert [t.title for t in tasks_mod.list_tasks(db)] == ["A", "B"]

    def test_list_tasks_by_status_alias(self, db):
        tasks_mod.create_task(db, "A")
        t2 = tasks_mod.create_task(db, "B")
        tasks_mod.update_task_status(db, t2.id, "wip")
        assert [t.id for t in tasks_mod.list_tasks(db, status="in progress")] == [t2.id]

    def test_invalid_priority(self, db):
        with pytest.raises(ValueError, match="Invalid priority"):
            tasks_mod.create_task(db, "A", priority="urgent!")

    def test_delete_task(self, db):
        t1 = tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B", blocked_by=[t1.id])
        assert tasks_mod.delete_task(db, t1.id)
        assert tasks_mod.get_task(db, "T002").blocked_by == []
        assert not tasks_mod.delete_task(db, t1.id)


class TestHierarchy:
    def test_epic_under_prd(self, db):
        tasks_mod.create_prd(db, "P1", "Payments")
        epic = tasks_mod.create_epic(db, "E1", "Checkout", prd_id="P1")
        assert epic.prd_id == "P1"
        assert [e.id for e in tasks_mod.list_epics(db, prd_id="P1")] == ["E1"]

    def test_epic_with_unknown_prd(self, db):
        with pytest.raises(ValueError, match="PRD not found"):
            tasks_mod.create_epic(db, "E1", prd_id="NOPE")

    def test_task_inherits_prd_from_epic(self, db):
        tasks_mod.create_prd(db, "P1")
        tasks_mod.create_epic(db, "E1", prd_id="P1")
        task = tasks_mod.create_task(db, "Cart", epic_id="E1")
        assert task.prd_id == "P1"
        assert task.parent == "P1/E1"

    def test_filters(self, db):
        tasks_mod.create_prd(db, "P1")
        tasks_mod.create_prd(db, "P2")
        tasks_mod.create_task(db, "A", prd_id="P1")
        tasks_mod.create_task(db, "B", prd_id="P2")
        assert [t.title for t in tasks_mod.list_tasks(db, prd_id="P2")] == ["B"]

    def test_container_status(self, db):
        tasks_mod.create_prd(db, "P1")
        tasks_mod.create_epic(db, "E1", prd_id="P1")
        assert tasks_mod.update_epic_status(db, "E1", TaskStatus.AUTO_DONE).status == TaskStatus.AUTO_DONE
        assert tasks_mod.update_prd_status(db, "P1", TaskStatus.AUTO_DONE).status == TaskStatus.AUTO_DONE


class TestTaskStatus:
    def test_in_progress_stamps_started_at(self, db):
        task = tasks_mod.create_task(db, "A")
        updated = tasks_mod.update_task_status(db, task.id, "in progress")
        assert updated.status == TaskStatus.IN_PROGRESS
        assert updated.started_at is not None
        assert updated.done_at is None

    def test_done_stamps_done_at(self, db):
        task = tasks_mod.create_task(db, "A")
        updated = tasks_mod.update_task_status(db, task.id, "done")
        assert updated.done_at is not None

    def test_clear_dates(self, db):
        task = tasks_mod.create_task(db, "A")
        tasks_mod.update_task_status(db, task.id, TaskStatus.IN_PROGRESS)
        reset = tasks_mod.update_task_status(db, task.id, TaskStatus.NOT_STARTED, clear_dates=True)
        assert reset.started_at is None

    def test_unknown_task(self, db):
        assert tasks_mod.update_task_status(db, "T404", "done") is None

    def test_events_logged(self, db):
        task = tasks_mod.create_task(db, "A")
        tasks_mod.update_task_status(db, task.id, "wip")
        events = tasks_mod.get_task_events(db, task.id)
        assert [e.event_type for e in events] == ["created", "status_changed"]
        assert events[1].old_value == "Not Started"
        assert events[1].new_value == "In Progress"


class TestDependencies:
    def test_create_with_blockers(self, db):
        t1 = tasks_mod.create_task(db, "A")
        t2 = tasks_mod.create_task(db, "B", blocked_by=[t1.id, t1.id])
        assert t2.blocked_by == [t1.id]

    def test_self_block_rejected(self, db):
        with pytest.raises(ValueError, match="cannot block itself"):
            tasks_mod.create_task(db, "A", task_id="T1", blocked_by=["T1"])
        assert tasks_mod.get_task(db, "T1") is None

    def test_add_dependency(self, db):
        t1 = tasks_mod.create_task(db, "A")
        t2 = tasks_mod.create_task(db, "B")
        updated = tasks_mod.add_dependency(db, t2.id, t1.id)
        assert updated.blocked_by == [t1.id]

    def test_add_dependency_idempotent(self, db):
        t1 = tasks_mod.create_task(db, "A")
        t2 = tasks_mod.create_task(db, "B", blocked_by=[t1.id])
        assert tasks_mod.add_dependency(db, t2.id, t1.id).blocked_by == [t1.id]

    def test_add_dependency_on_epic(self, db):
        tasks_mod.create_epic(db, "E1")
        t1 = tasks_mod.create_task(db, "A")
        assert tasks_mod.add_dependency(db, t1.id, "E1").blocked_by == ["E1"]

    def test_add_dependency_nonexistent(self, db):
        t1 = tasks_mod.create_task(db, "A")
        with pytest.raises(ValueError, match="Blocker not found"):
            tasks_mod.add_dependency(db, t1.id, "T999")

    def test_remove_dependency(self, db):
        t1 = tasks_mod.create_task(db, "A")
        t2 = tasks_mod.create_task(db, "B", blocked_by=[t1.id])
        assert tasks_mod.remove_dependency(db, t2.id, t1.id).blocked_by == []
        types = [e.event_type for e in tasks_mod.get_task_events(db, t2.id)]
        assert "dependency_removed" in types


class TestSqliteBacklog:
    def test_roundtrip(self, config, db):
        tasks_mod.create_prd(db, "P1")
        tasks_mod.create_task(db, "A", prd_id="P1")
        backlog = tasks_mod.SqliteBacklog(config.db_path)
        assert [t.title for t in backlog.list_tasks(prd_id="P1")] == ["A"]
        backlog.update_task_status("T001", TaskStatus.DONE)
        assert backlog.get_task("T001").status == TaskStatus.DONE
        assert backlog.update_prd_status("P1", TaskStatus.AUTO_DONE).status == TaskStatus.AUTO_DONE
