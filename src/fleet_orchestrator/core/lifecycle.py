"""Task lifecycle: provider events, dependency triggers, sync and dispatch.

Provider-side changes arrive two ways. Webhook deliveries go through
:func:`handle_event`; on-demand reconciliation goes through :func:`sync_task`.
Both write through :func:`tasks.apply_task_update`, which keeps
``started_at``/``completed_at`` consistent with the status.
"""

import logging
import sqlite3
from datetime import datetime

from fleet_orchestrator.core import messages, metrics
from fleet_orchestrator.core.errors import ValidationError
from fleet_orchestrator.core.tasks import (
    apply_task_update,
    dependencies_met,
    find_queued_dependents,
    get_task_by_external_id,
    set_external_id,
)
from fleet_orchestrator.db.engine import to_iso, utcnow
from fleet_orchestrator.db.models import Task
from fleet_orchestrator.integrations.blackbox import (
    BlackboxClient,
    BlackboxError,
    BlackboxTask,
    DiffStats,
)

logger = logging.getLogger(__name__)

# Provider status -> local status
PROVIDER_STATUS_MAP = {
    "pending": "assigned",
    "running": "running",
    "completed": "completed",
    "failed": "failed",
    "cancelled": "cancelled",
}

SYNCABLE_STATUSES = ("assigned", "running")

GITHUB_REQUIRED = "GitHub connection required. Please connect your GitHub account."


def record_delivery(
    db: sqlite3.Connection,
    external_id: str,
    event: str,
    now: datetime | None = None,
    commit: bool = True,
) -> bool:
    """Remember a webhook delivery. False if it was already seen."""
    cursor = db.execute(
        """INSERT OR IGNORE INTO webhook_deliveries (external_task_id, event, received_at)
           VALUES (?, ?, ?)""",
        (external_id, event, to_iso(now or utcnow())),
    )
    if commit:
        db.commit()
    return cursor.rowcount == 1


def handle_event(
    db: sqlite3.Connection,
    event: str,
    payload: dict,
    now: datetime | None = None,
    dedup: bool = False,
) -> Task | None:
    """Apply a provider webhook event to the task dispatched as ``payload['id']``.

    Returns the updated task, or None when no task carries that external id.
    With ``dedup`` a repeated (task, event) pair is acknowledged without
    being applied again. The delivery is only remembered once the task
    update commits, so a delivery that fails can be retried.
    """
    external_id = str(payload.get("id") or "")
    task = get_task_by_external_id(db, external_id)
    if not task:
        logger.info("Task not found for provider id %s", external_id)
        return None

    now = now or utcnow()
    try:
        if dedup and not record_delivery(db, external_id, event, now=now, commit=False):
            logger.info("Ignoring repeated %s for task %s", event, task.id)
            return task
        updated = _apply_event(db, task, event, payload, now)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if event == "task.completed":
        _record_completion(db, updated, payload, now)
        _trigger_dependents(db, updated.id, now)
    elif event == "task.failed":
        _record_outcome(db, "failed", None, None, now)

    return updated


def _apply_event(
    db: sqlite3.Connection,
    task: Task,
    event: str,
    payload: dict,
    now: datetime,
) -> Task:
    diff_stats = DiffStats.from_dict(payload.get("diffStats"))
    fields: dict = {}

    if event == "task.started":
        fields["status"] = "running"
    elif event == "task.progress":
        fields["progress"] = payload.get("progress") or 0
        if payload.get("eta"):
            fields["eta"] = payload["eta"]
    elif event == "task.completed":
        fields.update(
            status="completed",
            progress=100,
            result={
                "success": True,
                "prUrl": payload.get("prUrl"),
                "branchName": payload.get("branchName"),
                "diffStats": diff_stats.to_dict() if diff_stats else None,
                "summary": payload.get("summary"),
            },
        )
    elif event == "task.failed":
        fields.update(
            status="failed",
            error=payload.get("error") or "Task failed",
            result={"success": False, "error": payload.get("error")},
        )
    elif event == "task.cancelled":
        fields["status"] = "cancelled"
    else:
        logger.info("Unknown event type: %s", event)

    updated = apply_task_update(db, task, fields, now=now, commit=False)
    if "status" in fields:
        logger.info("Task %s: %s -> %s (%s)", task.id, task.status, updated.status, event)
    return updated


def _record_completion(db: sqlite3.Connection, task: Task, payload: dict, now: datetime):
    diff_stats = DiffStats.from_dict(payload.get("diffStats"))
    pr_url = payload.get("prUrl")
    summary = payload.get("summary")
    diff_text = f"+{diff_stats.added}/-{diff_stats.removed} lines" if diff_stats else ""
    if pr_url:
        body = f"PR created: {pr_url}. {diff_text}"
        actions = [
            {"label": "View PR", "action": "open_url", "params": {"url": pr_url}},
            {"label": "Merge PR", "action": "merge_pr", "params": {"url": pr_url}},
        ]
    else:
        body = f"Task completed successfully. {diff_text}"
        actions = None

    try:
        messages.create_message(
            db,
            task.initiative_id,
            task.initiative_id,
            "STATUS",
            f"Task completed: {summary[:50] if summary else 'Task finished'}",
            body=body.strip(),
            from_task_id=task.id,
            metadata={
                "prUrl": pr_url,
                "diffStats": diff_stats.to_dict() if diff_stats else None,
            },
            suggested_actions=actions,
            now=now,
        )
    except Exception:
        db.rollback()
        logger.exception("Error creating completion message for task %s", task.id)

    _record_outcome(db, "completed", pr_url, diff_stats, now)


def _record_outcome(
    db: sqlite3.Connection,
    status: str,
    pr_url: str | None,
    diff_stats: DiffStats | None,
    now: datetime,
):
    try:
        metrics.record_task_outcome(db, status, pr_url=pr_url, diff_stats=diff_stats, now=now)
    except Exception:
        db.rollback()
        logger.exception("Error updating metrics")


def _trigger_dependents(db: sqlite3.Connection, task_id: str, now: datetime | None):
    try:
        trigger_dependent_tasks(db, task_id, now=now)
    except Exception:
        db.rollback()
        logger.exception("Error triggering dependents of task %s", task_id)


def trigger_dependent_tasks(
    db: sqlite3.Connection,
    completed_task_id: str,
    now: datetime | None = None,
) -> list[str]:
    """Promote queued dependents of a completed task whose dependencies are all done.

    Returns the ids moved to ``assigned``. Dependents with any unfinished
    or failed dependency stay queued.
    """
    promoted = []
    for dependent in find_queued_dependents(db, completed_task_id):
        if not dependencies_met(db, dependent):
            continue
        apply_task_update(db, dependent, {"status": "assigned"}, now=now)
        logger.info("Triggered dependent task: %s", dependent.id)
        promoted.append(dependent.id)
    return promoted


def sync_task(
    db: sqlite3.Connection,
    task: Task,
    gateway: BlackboxClient,
    now: datetime | None = None,
) -> Task:
    """Reconcile an in-flight task with the provider's current snapshot.

    Only dispatched tasks that are assigned or running are synced; others
    are returned unchanged. Gateway errors propagate to the caller.
    """
    if not task.blackbox_task_id or task.status not in SYNCABLE_STATUSES:
        return task

    snapshot = gateway.get_task(task.blackbox_task_id)
    status = PROVIDER_STATUS_MAP.get(snapshot.status, task.status)
    fields: dict = {"status": status, "progress": snapshot.progress}

    if snapshot.status == "completed":
        fields["result"] = _snapshot_result(snapshot)
    elif snapshot.status == "failed":
        fields["error"] = snapshot.error or "Task failed"
        fields["result"] = {"success": False, "error": snapshot.error}

    updated = apply_task_update(db, task, fields, now=now)
    if status == "completed" and task.status != "completed":
        _trigger_dependents(db, updated.id, now)
    return updated


def _snapshot_result(snapshot: BlackboxTask) -> dict:
    return {
        "success": True,
        "prUrl": snapshot.pr_url,
        "branchName": snapshot.branch_name,
        "diffStats": snapshot.diff_stats.to_dict() if snapshot.diff_stats else None,
        "summary": snapshot.logs[-1] if snapshot.logs else None,
    }


def dispatch_task(
    db: sqlite3.Connection,
    task: Task,
    gateway: BlackboxClient,
    credential: str | None,
    agent: str | None = None,
    model: str | None = None,
    now: datetime | None = None,
) -> Task:
    """Send a task to the provider and remember its external id.

    The repository, branch, agent and model come from the task itself;
    ``agent`` and ``model`` override the stored ones. A repository target
    needs ``credential``. The stored model is dropped when the agent is
    overridden. A provider failure marks the task failed with the
    error text instead of raising.
    """
    if task.repo_url and not credential:
        raise ValidationError(GITHUB_REQUIRED)
    if not model and (not agent or agent == task.agent):
        model = task.model
    agent = agent or task.agent or "claude"

    try:
        remote = gateway.create_task(
            task.prompt,
            repo_url=task.repo_url,
            branch=task.branch or "main",
            agent=agent,
            model=model,
            credentials=credential,
        )
    except BlackboxError as exc:
        logger.warning("Error executing task %s via provider: %s", task.id, exc)
        return apply_task_update(
            db,
            task,
            {"status": "failed", "error": str(exc) or "Failed to execute task"},
            now=now,
        )

    updated = set_external_id(db, task.id, remote.id)
    if updated.status != "running":
        updated = apply_task_update(db, updated, {"status": "running"}, now=now)
    logger.info("Dispatched task %s as %s", task.id, remote.id)
    return updated
