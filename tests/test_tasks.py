"""Tests for task management operations."""

import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from fleet_orchestrator.core import initiatives as initiatives_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core import users as users_mod
from fleet_orchestrator.core.errors import NotFoundError, ValidationError
from fleet_orchestrator.db.engine import init_db

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        yield conn
        conn.close()


@pytest.fixture
def owner(db):
    return users_mod.create_user(db, "dev@example.com", name="Dev")


@pytest.fixture
def initiative(db, owner):
    return initiatives_mod.create_initiative(db, owner.id, "Backend", "backend")


class TestTaskCRUD:
    def test_create_task(self, db, initiative):
        task = tasks_mod.create_task(db, initiative.id, "Add login endpoint", now=T0)
        assert task.status == "queued"
        assert task.priority == "medium"
        assert task.type == "custom"
        assert task.progress == 0
        assert task.queued_at == T0
        assert task.started_at is None
        assert task.completed_at is None

    def test_create_running_stamps_started_at(self, db, initiative):
        task = tasks_mod.create_task(db, initiative.id, "Go", status="running", now=T0)
        assert task.status == "running"
        assert task.started_at == T0

    def test_create_requires_prompt(self, db, initiative):
        with pytest.raises(ValidationError):
            tasks_mod.create_task(db, initiative.id, "")

    def test_create_rejects_bad_priority(self, db, initiative):
        with pytest.raises(ValidationError, match="priority"):
            tasks_mod.create_task(db, initiative.id, "x", priority="urgent")

    def test_create_rejects_terminal_status(self, db, initiative):
        with pytest.raises(ValidationError):
            tasks_mod.create_task(db, initiative.id, "x", status="completed")

    def test_get_scoped_by_owner(self, db, owner, initiative):
        task = tasks_mod.create_task(db, initiative.id, "Mine")
        other = users_mod.create_user(db, "other@example.com")
        assert tasks_mod.get_task(db, task.id, owner.id) is not None
        assert tasks_mod.get_task(db, task.id, other.id) is None

    def test_require_task_raises(self, db):
        with pytest.raises(NotFoundError):
            tasks_mod.require_task(db, "missing")

    def test_list_newest_first_with_total(self, db, owner, initiative):
        for i in range(3):
            tasks_mod.create_task(db, initiative.id, f"Task {i}", now=T0 + timedelta(minutes=i))
        tasks, total = tasks_mod.list_tasks(db, owner.id, limit=2)
        assert total == 3
        assert [t.prompt for t in tasks] == ["Task 2", "Task 1"]

        page, _ = tasks_mod.list_tasks(db, owner.id, limit=2, offset=2)
        assert [t.prompt for t in page] == ["Task 0"]

    def test_list_filters(self, db, owner, initiative):
        tasks_mod.create_task(db, initiative.id, "A", priority="high")
        tasks_mod.create_task(db, initiative.id, "B", status="running")
        tasks_mod.create_task(db, initiative.id, "C")

        running, total = tasks_mod.list_tasks(db, owner.id, statuses=["running"])
        assert total == 1 and running[0].prompt == "B"

        high, _ = tasks_mod.list_tasks(db, owner.id, priority="high")
        assert [t.prompt for t in high] == ["A"]

        both, total = tasks_mod.list_tasks(db, owner.id, statuses=["queued", "running"])
        assert total == 3

    def test_list_excludes_other_users(self, db, initiative):
        tasks_mod.create_task(db, initiative.id, "Mine")
        other = users_mod.create_user(db, "other@example.com")
        tasks, total = tasks_mod.list_tasks(db, other.id)
        assert tasks == [] and total == 0


class TestStatusTimestamps:
    def test_completed_sets_completed_at(self, db, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x", status="running", now=T0)
        done = tasks_mod.set_status(db, task.id, "completed", now=T0 + timedelta(hours=1))
        assert done.completed_at == T0 + timedelta(hours=1)
        assert done.started_at == T0

    def test_completed_from_queued_sets_started_at(self, db, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x", now=T0)
        done = tasks_mod.set_status(db, task.id, "completed", now=T0)
        assert done.started_at == T0
        assert done.completed_at == T0

    def test_failed_does_not_set_started_at(self, db, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x", now=T0)
        failed = tasks_mod.set_status(db, task.id, "failed", now=T0)
        assert failed.started_at is None
        assert failed.completed_at == T0

    def test_leaving_terminal_clears_completed_at(self, db, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x", status="running", now=T0)
        tasks_mod.set_status(db, task.id, "failed", now=T0)
        again = tasks_mod.set_status(db, task.id, "running", now=T0)
        assert again.completed_at is None
        assert again.started_at == T0

    def test_update_clamps_progress(self, db, owner, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x")
        assert tasks_mod.update_task(db, task.id, owner.id, progress=250).progress == 100
        assert tasks_mod.update_task(db, task.id, owner.id, progress=-4).progress == 0

    def test_back_to_waiting_clears_started_at(self, db, owner, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x", status="running", now=T0)
        for status in ("assigned", "queued"):
            tasks_mod.set_status(db, task.id, "running", now=T0)
            waiting = tasks_mod.update_task(db, task.id, owner.id, status=status, now=T0)
            assert waiting.status == status
            assert waiting.started_at is None
            assert waiting.completed_at is None

    def test_update_rejects_non_numeric_progress(self, db, owner, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x")
        with pytest.raises(ValidationError, match="Invalid progress"):
            tasks_mod.update_task(db, task.id, owner.id, progress="abc")
        assert tasks_mod.get_task(db, task.id).progress == 0

    def test_update_ignores_unknown_fields(self, db, owner, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x")
        updated = tasks_mod.update_task(db, task.id, owner.id, prompt="changed", eta="soon")
        assert updated.prompt == "x"
        assert updated.eta == "soon"

    def test_update_rejects_invalid_status(self, db, owner, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x")
        with pytest.raises(ValidationError):
            tasks_mod.update_task(db, task.id, owner.id, status="paused")

    def test_status_change_logged(self, db, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x")
        tasks_mod.set_status(db, task.id, "running")
        events = tasks_mod.get_task_events(db, task.id)
        assert [e.event_type for e in events] == ["created", "status_changed"]
        assert events[1].old_value == "queued"
        assert events[1].new_value == "running"


class TestDeleteOrCancel:
    def test_running_task_is_cancelled(self, db, owner, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x", status="running")
        assert tasks_mod.delete_or_cancel(db, task.id, owner.id, now=T0) == "cancelled"
        cancelled = tasks_mod.get_task(db, task.id)
        assert cancelled.status == "cancelled"
        assert cancelled.completed_at == T0

    def test_queued_task_is_deleted(self, db, owner, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x")
        assert tasks_mod.delete_or_cancel(db, task.id, owner.id) == "deleted"
        assert tasks_mod.get_task(db, task.id) is None

    def test_foreign_task_untouched(self, db, initiative):
        task = tasks_mod.create_task(db, initiative.id, "x")
        other = users_mod.create_user(db, "other@example.com")
        assert tasks_mod.delete_or_cancel(db, task.id, other.id) is None
        assert tasks_mod.get_task(db, task.id) is not None


class TestDependencies:
    def test_create_with_dependencies(self, db, initiative):
        a = tasks_mod.create_task(db, initiative.id, "A")
        b = tasks_mod.create_task(db, initiative.id, "B", depends_on=[a.id, a.id])
        assert b.depends_on == [a.id]

    def test_unknown_dependency_rejected(self, db, initiative):
        with pytest.raises(tasks_mod.DependencyError):
            tasks_mod.create_task(db, initiative.id, "B", depends_on=["nope"])

    def test_dependency_on_foreign_task_rejected(self, db, initiative):
        other = users_mod.create_user(db, "other@example.com")
        theirs = initiatives_mod.create_initiative(db, other.id, "Theirs", "theirs")
        foreign = tasks_mod.create_task(db, theirs.id, "Foreign")
        owner_id = initiative.user_id
        with pytest.raises(tasks_mod.DependencyError):
            tasks_mod.create_task(db, initiative.id, "B", depends_on=[foreign.id], user_id=owner_id)

    def test_add_and_remove(self, db, owner, initiative):
        a = tasks_mod.create_task(db, initiative.id, "A")
        b = tasks_mod.create_task(db, initiative.id, "B")
        assert tasks_mod.add_dependency(db, b.id, a.id, owner.id).depends_on == [a.id]
        assert tasks_mod.remove_dependency(db, b.id, a.id, owner.id).depends_on == []

    def test_self_dependency_rejected(self, db, initiative):
        a = tasks_mod.create_task(db, initiative.id, "A")
        with pytest.raises(tasks_mod.DependencyError, match="cycle"):
            tasks_mod.add_dependency(db, a.id, a.id)

    def test_cycle_rejected(self, db, initiative):
        a = tasks_mod.create_task(db, initiative.id, "A")
        b = tasks_mod.create_task(db, initiative.id, "B", depends_on=[a.id])
        c = tasks_mod.create_task(db, initiative.id, "C", depends_on=[b.id])
        with pytest.raises(tasks_mod.DependencyError, match="cycle"):
            tasks_mod.add_dependency(db, a.id, c.id)
        assert tasks_mod.get_task(db, a.id).depends_on == []

    def test_dependencies_met(self, db, initiative):
        a = tasks_mod.create_task(db, initiative.id, "A")
        b = tasks_mod.create_task(db, initiative.id, "B")
        c = tasks_mod.create_task(db, initiative.id, "C", depends_on=[a.id, b.id])
        assert not tasks_mod.dependencies_met(db, c)
        tasks_mod.set_status(db, a.id, "completed")
        assert not tasks_mod.dependencies_met(db, c)
        tasks_mod.set_status(db, b.id, "completed")
        assert tasks_mod.dependencies_met(db, c)

    def test_ready_tasks_by_priority(self, db, initiative):
        a = tasks_mod.create_task(db, initiative.id, "A")
        tasks_mod.create_task(db, initiative.id, "Blocked", depends_on=[a.id])
        tasks_mod.create_task(db, initiative.id, "Low", priority="low", now=T0)
        tasks_mod.create_task(db, initiative.id, "Critical", priority="critical", now=T0)
        ready = tasks_mod.get_ready_tasks(db, initiative.id)
        assert [t.prompt for t in ready] == ["Critical", "A", "Low"]


class TestSchemaMigration:
    def test_existing_database_gains_target_columns(self):
        with tempfile.TemporaryDirectory() as tmp:
            db_path = Path(tmp) / "old.db"
            old = sqlite3.connect(str(db_path))
            old.execute(
                """CREATE TABLE tasks (id TEXT PRIMARY KEY, initiative_id TEXT NOT NULL,
                       prompt TEXT NOT NULL, blackbox_task_id TEXT, queued_at TEXT NOT NULL)"""
            )
            old.commit()
            old.close()

            conn = init_db(db_path)
            columns = {r["name"] for r in conn.execute("PRAGMA table_info(tasks)")}
            conn.close()
            assert {"repo_url", "branch", "agent", "model"} <= columns
