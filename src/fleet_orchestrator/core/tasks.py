"""Task management operations."""

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from fleet_orchestrator.core.errors import NotFoundError, ValidationError
from fleet_orchestrator.db.engine import parse_dt, to_iso, utcnow
from fleet_orchestrator.db.models import (
    PENDING_STATUSES,
    STARTED_STATUSES,
    TASK_PRIORITIES,
    TASK_STATUSES,
    TASK_TYPES,
    TERMINAL_STATUSES,
    Task,
    TaskEvent,
)

INITIAL_STATUSES = ("queued", "assigned", "running")

_UPDATABLE = {
    "priority",
    "status",
    "assigned_agents",
    "progress",
    "eta",
    "result",
    "artifacts",
    "error",
}
_JSON_FIELDS = {"result", "artifacts"}

_PRIORITY_ORDER = (
    "CASE priority WHEN 'critical' THEN 0 WHEN 'high' THEN 1 "
    "WHEN 'medium' THEN 2 ELSE 3 END"
)


class DependencyError(ValidationError):
    """Raised when a dependency is unknown or would close a cycle."""


def create_task(
    db: sqlite3.Connection,
    initiative_id: str,
    prompt: str,
    repository_id: str | None = None,
    type: str = "custom",
    priority: str = "medium",
    depends_on: list[str] | None = None,
    status: str = "queued",
    user_id: str | None = None,
    repo_url: str | None = None,
    branch: str | None = None,
    agent: str | None = None,
    model: str | None = None,
    now: datetime | None = None,
) -> Task:
    """Create a new task.

    ``status`` must be one of the entry states; ``running`` also stamps
    ``started_at``. Dependencies must already exist (and belong to
    ``user_id`` when given). ``repo_url``, ``branch``, ``agent`` and
    ``model`` are kept so a task queued behind dependencies is later
    dispatched to the same target.
    """
    if not prompt:
        raise ValidationError("Prompt is required")
    if priority not in TASK_PRIORITIES:
        raise ValidationError(f"Invalid priority: {priority}")
    if type not in TASK_TYPES:
        raise ValidationError(f"Invalid task type: {type}")
    if status not in INITIAL_STATUSES:
        raise ValidationError(f"Tasks cannot be created as '{status}'")

    deps = list(dict.fromkeys(depends_on or []))
    for dep_id in deps:
        if not get_task(db, dep_id, user_id):
            raise DependencyError(f"Dependency task not found: {dep_id}")

    now = now or utcnow()
    task_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO tasks (id, initiative_id, repository_id, prompt, repo_url, branch, agent,
               model, type, priority, status, progress, queued_at, started_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
        (
            task_id,
            initiative_id,
            repository_id,
            prompt,
            repo_url,
            branch,
            agent,
            model,
            type,
            priority,
            status,
            to_iso(now),
            to_iso(now) if status in STARTED_STATUSES else None,
        ),
    )

    for dep_id in deps:
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )

    _log_event(db, task_id, "created", None, status)
    db.commit()
    return get_task(db, task_id)


def get_task(
    db: sqlite3.Connection,
    task_id: str,
    user_id: str | None = None,
) -> Task | None:
    """Get a task by ID with its dependencies.

    With ``user_id`` the lookup is scoped through the owning initiative.
    """
    if user_id is None:
        row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    else:
        row = db.execute(
            """SELECT t.* FROM tasks t JOIN initiatives i ON i.id = t.initiative_id
               WHERE t.id = ? AND i.user_id = ?""",
            (task_id, user_id),
        ).fetchone()
    if not row:
        return None
    return _with_dependencies(db, _row_to_task(row))


def get_task_by_external_id(db: sqlite3.Connection, external_id: str) -> Task | None:
    """Find the task that was dispatched as ``external_id`` on the provider."""
    row = db.execute(
        "SELECT * FROM tasks WHERE blackbox_task_id = ?", (external_id,)
    ).fetchone()
    if not row:
        return None
    return _with_dependencies(db, _row_to_task(row))


def list_tasks(
    db: sqlite3.Connection,
    user_id: str,
    initiative_id: str | None = None,
    statuses: list[str] | None = None,
    priority: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Task], int]:
    """List a user's tasks, newest first. Returns the page and the unpaged total."""
    where = "i.user_id = ?"
    params: list = [user_id]

    if initiative_id:
        where += " AND t.initiative_id = ?"
        params.append(initiative_id)

    if statuses:
        where += f" AND t.status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)

    if priority:
        where += " AND t.priority = ?"
        params.append(priority)

    base = f"FROM tasks t JOIN initiatives i ON i.id = t.initiative_id WHERE {where}"
    total = db.execute(f"SELECT COUNT(*) {base}", params).fetchone()[0]
    rows = db.execute(
        f"SELECT t.* {base} ORDER BY t.queued_at DESC, t.rowid DESC LIMIT ? OFFSET ?",
        params + [limit, offset],
    ).fetchall()
    return [_with_dependencies(db, _row_to_task(r)) for r in rows], total


def list_active_tasks(db: sqlite3.Connection, user_id: str, limit: int = 10) -> list[Task]:
    tasks, _ = list_tasks(db, user_id, statuses=["queued", "assigned", "running"], limit=limit)
    return tasks


def status_timestamps(task: Task, status: str, now: datetime) -> dict[str, str | None]:
    """Timestamp columns to write when ``task`` moves to ``status``.

    Keeps ``completed_at`` set exactly while the status is terminal. Stamps
    ``started_at`` the first time the task runs or completes, and clears it
    when the task goes back to waiting.
    """
    updates: dict[str, str | None] = {}
    if status in STARTED_STATUSES and task.started_at is None:
        updates["started_at"] = to_iso(now)
    elif status in PENDING_STATUSES and task.started_at is not None:
        updates["started_at"] = None
    if status in TERMINAL_STATUSES:
        if task.completed_at is None or not task.is_terminal:
            updates["completed_at"] = to_iso(now)
    elif task.completed_at is not None:
        updates["completed_at"] = None
    return updates


def apply_task_update(
    db: sqlite3.Connection,
    task: Task,
    fields: dict[str, Any],
    now: datetime | None = None,
    commit: bool = True,
) -> Task:
    """Write ``fields`` to ``task`` and keep lifecycle timestamps consistent."""
    now = now or utcnow()
    updates = dict(fields)

    status = updates.get("status")
    if status is not None:
        if status not in TASK_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        updates.update(status_timestamps(task, status, now))
    if "priority" in updates and updates["priority"] not in TASK_PRIORITIES:
        raise ValidationError(f"Invalid priority: {updates['priority']}")
    if "progress" in updates and updates["progress"] is not None:
        updates["progress"] = clamp_progress(updates["progress"])
    for key in _JSON_FIELDS & updates.keys():
        if updates[key] is not None:
            updates[key] = json.dumps(updates[key])

    if updates:
        set_parts = [f"{k} = ?" for k in updates]
        set_parts.append("updated_at = ?")
        values = list(updates.values()) + [to_iso(now), task.id]
        db.execute(f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?", values)

    if status is not None and status != task.status:
        _log_event(db, task.id, "status_changed", task.status, status)
    if commit:
        db.commit()
    return get_task(db, task.id)


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    user_id: str,
    now: datetime | None = None,
    **kwargs,
) -> Task | None:
    """Owner-initiated update of allow-listed fields."""
    task = get_task(db, task_id, user_id)
    if not task:
        return None
    fields = {k: v for k, v in kwargs.items() if k in _UPDATABLE and v is not None}
    return apply_task_update(db, task, fields, now=now)


def set_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    now: datetime | None = None,
) -> Task | None:
    """Update a task's status. Returns the updated task."""
    task = get_task(db, task_id)
    if not task:
        return None
    return apply_task_update(db, task, {"status": status}, now=now)


def set_external_id(db: sqlite3.Connection, task_id: str, external_id: str) -> Task | None:
    db.execute(
        "UPDATE tasks SET blackbox_task_id = ?, updated_at = datetime('now') WHERE id = ?",
        (external_id, task_id),
    )
    _log_event(db, task_id, "dispatched", None, external_id)
    db.commit()
    return get_task(db, task_id)


def delete_or_cancel(
    db: sqlite3.Connection,
    task_id: str,
    user_id: str,
    now: datetime | None = None,
) -> str | None:
    """Delete a task, or cancel it if it is running.

    Returns ``"deleted"``, ``"cancelled"`` or ``None`` when the task is not
    visible to ``user_id``. Cancelling only changes the local record.
    """
    task = get_task(db, task_id, user_id)
    if not task:
        return None

    if task.status == "running":
        apply_task_update(db, task, {"status": "cancelled"}, now=now)
        return "cancelled"

    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? OR depends_on_task_id = ?",
        (task_id, task_id),
    )
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return "deleted"


def dependency_ids(db: sqlite3.Connection, task_id: str) -> list[str]:
    rows = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
        (task_id,),
    ).fetchall()
    return [r["depends_on_task_id"] for r in rows]


def would_create_cycle(db: sqlite3.Connection, task_id: str, depends_on_id: str) -> bool:
    """True if making ``task_id`` depend on ``depends_on_id`` closes a cycle."""
    if task_id == depends_on_id:
        return True
    seen: set[str] = set()
    stack = [depends_on_id]
    while stack:
        current = stack.pop()
        if current == task_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(dependency_ids(db, current))
    return False


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
    user_id: str | None = None,
) -> Task | None:
    """Add a dependency to an existing task, rejecting cycles."""
    task = get_task(db, task_id, user_id)
    if not task:
        return None
    if not get_task(db, depends_on_id, user_id):
        raise DependencyError(f"Dependency task not found: {depends_on_id}")
    if depends_on_id in task.depends_on:
        return task  # Already exists
    if would_create_cycle(db, task_id, depends_on_id):
        raise DependencyError(f"Dependency on {depends_on_id} would create a cycle")
    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_added", None, depends_on_id)
    db.commit()
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
    user_id: str | None = None,
) -> Task | None:
    """Remove a dependency from a task."""
    task = get_task(db, task_id, user_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_removed", depends_on_id, None)
    db.commit()
    return get_task(db, task_id)


def dependencies_met(db: sqlite3.Connection, task: Task) -> bool:
    """True when every dependency of ``task`` is completed."""
    if not task.depends_on:
        return True
    placeholders = ", ".join("?" for _ in task.depends_on)
    completed = db.execute(
        f"SELECT COUNT(*) FROM tasks WHERE id IN ({placeholders}) AND status = 'completed'",
        task.depends_on,
    ).fetchone()[0]
    return completed == len(task.depends_on)


def find_queued_dependents(db: sqlite3.Connection, task_id: str) -> list[Task]:
    """Queued tasks that list ``task_id`` among their dependencies."""
    rows = db.execute(
        """SELECT t.* FROM tasks t
           JOIN task_dependencies d ON d.task_id = t.id
           WHERE d.depends_on_task_id = ? AND t.status = 'queued'""",
        (task_id,),
    ).fetchall()
    return [_with_dependencies(db, _row_to_task(r)) for r in rows]


def get_ready_tasks(db: sqlite3.Connection, initiative_id: str) -> list[Task]:
    """Get queued tasks whose dependencies are all completed, highest priority first."""
    rows = db.execute(
        f"""SELECT * FROM tasks WHERE initiative_id = ? AND status = 'queued'
            ORDER BY {_PRIORITY_ORDER}, queued_at ASC""",
        (initiative_id,),
    ).fetchall()
    tasks = [_with_dependencies(db, _row_to_task(r)) for r in rows]
    return [t for t in tasks if dependencies_met(db, t)]


def list_assigned_tasks(db: sqlite3.Connection, user_id: str | None = None) -> list[Task]:
    """Tasks promoted to 'assigned' that have not been dispatched yet."""
    query = """SELECT t.* FROM tasks t JOIN initiatives i ON i.id = t.initiative_id
               WHERE t.status = 'assigned' AND t.blackbox_task_id IS NULL"""
    params: list = []
    if user_id is not None:
        query += " AND i.user_id = ?"
        params.append(user_id)
    query += f" ORDER BY {_PRIORITY_ORDER}, t.queued_at ASC"
    rows = db.execute(query, params).fetchall()
    return [_with_dependencies(db, _row_to_task(r)) for r in rows]


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def require_task(db: sqlite3.Connection, task_id: str, user_id: str | None = None) -> Task:
    task = get_task(db, task_id, user_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")
    return task


def clamp_progress(value: Any) -> int:
    try:
        return max(0, min(100, int(value)))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid progress: {value!r}") from exc


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _with_dependencies(db: sqlite3.Connection, task: Task) -> Task:
    task.depends_on = dependency_ids(db, task.id)
    return task


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        initiative_id=row["initiative_id"],
        prompt=row["prompt"],
        repository_id=row["repository_id"],
        repo_url=row["repo_url"],
        branch=row["branch"],
        agent=row["agent"],
        model=row["model"],
        type=row["type"],
        priority=row["priority"],
        status=row["status"],
        assigned_agents=row["assigned_agents"],
        progress=row["progress"] or 0,
        eta=row["eta"],
        blackbox_task_id=row["blackbox_task_id"],
        result=json.loads(row["result"]) if row["result"] else None,
        artifacts=json.loads(row["artifacts"] or "[]"),
        error=row["error"],
        queued_at=parse_dt(row["queued_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
