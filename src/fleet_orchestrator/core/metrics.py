"""Hourly rollups of task outcomes."""

import sqlite3
from datetime import datetime, timedelta, timezone

from fleet_orchestrator.db.engine import parse_dt, to_iso, utcnow
from fleet_orchestrator.db.models import MetricsHour
from fleet_orchestrator.integrations.blackbox import DiffStats

COUNTERS = (
    "tasks_created",
    "tasks_completed",
    "tasks_failed",
    "prs_created",
    "lines_added",
    "lines_removed",
    "files_changed",
)

_UPSERT = f"""
INSERT INTO metrics_hourly (hour, {", ".join(COUNTERS)})
VALUES (?, {", ".join("?" for _ in COUNTERS)})
ON CONFLICT(hour) DO UPDATE SET
    {", ".join(f"{c} = {c} + excluded.{c}" for c in COUNTERS)}
"""


def hour_bucket(moment: datetime) -> datetime:
    """Truncate ``moment`` to the start of its UTC hour."""
    return moment.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _increment(db: sqlite3.Connection, moment: datetime, **deltas: int):
    values = [int(deltas.get(c, 0)) for c in COUNTERS]
    db.execute(_UPSERT, [to_iso(hour_bucket(moment)), *values])


def record_task_created(
    db: sqlite3.Connection,
    now: datetime | None = None,
    commit: bool = True,
):
    _increment(db, now or utcnow(), tasks_created=1)
    if commit:
        db.commit()


def record_task_outcome(
    db: sqlite3.Connection,
    status: str,
    pr_url: str | None = None,
    diff_stats: DiffStats | None = None,
    now: datetime | None = None,
    commit: bool = True,
):
    """Add one completed or failed task to the current hour's rollup.

    Completions also count a created PR and accumulate diff stats.
    """
    if status == "completed":
        deltas = {"tasks_completed": 1, "prs_created": 1 if pr_url else 0}
        if diff_stats:
            deltas.update(
                lines_added=diff_stats.added,
                lines_removed=diff_stats.removed,
                files_changed=diff_stats.files_changed,
            )
    elif status == "failed":
        deltas = {"tasks_failed": 1}
    else:
        raise ValueError(f"No rollup for status '{status}'")

    _increment(db, now or utcnow(), **deltas)
    if commit:
        db.commit()


def get_hour(db: sqlite3.Connection, moment: datetime) -> MetricsHour | None:
    row = db.execute(
        "SELECT * FROM metrics_hourly WHERE hour = ?", (to_iso(hour_bucket(moment)),)
    ).fetchone()
    if not row:
        return None
    return _row_to_hour(row)


def list_hours(
    db: sqlite3.Connection,
    since: datetime,
    until: datetime | None = None,
) -> list[MetricsHour]:
    """Buckets from ``since`` (inclusive) to ``until`` (exclusive), newest first."""
    query = "SELECT * FROM metrics_hourly WHERE hour >= ?"
    params: list = [to_iso(hour_bucket(since))]
    if until is not None:
        query += " AND hour < ?"
        params.append(to_iso(until.astimezone(timezone.utc)))
    query += " ORDER BY hour DESC"
    return [_row_to_hour(r) for r in db.execute(query, params).fetchall()]


def summarize(
    db: sqlite3.Connection,
    hours: int = 24,
    now: datetime | None = None,
) -> dict[str, int]:
    """Sum every counter over the trailing ``hours`` window."""
    now = now or utcnow()
    totals = dict.fromkeys(COUNTERS, 0)
    for bucket in list_hours(db, now - timedelta(hours=hours)):
        for counter in COUNTERS:
            totals[counter] += getattr(bucket, counter)
    return totals


def _row_to_hour(row: sqlite3.Row) -> MetricsHour:
    return MetricsHour(
        hour=parse_dt(row["hour"]),
        **{c: row[c] or 0 for c in COUNTERS},
    )
