"""Initiative management operations."""

import json
import re
import sqlite3
import uuid

from fleet_orchestrator.core.errors import NotFoundError, ValidationError
from fleet_orchestrator.db.engine import parse_dt
from fleet_orchestrator.db.models import Initiative
from fleet_orchestrator.integrations.blackbox import DEFAULT_MODELS

SLUG_RE = re.compile(r"^[a-z0-9-]+$")
SCALING_POLICIES = ("auto", "manual")
INITIATIVE_STATUSES = ("active", "paused", "archived")
DEFAULT_SLUG = "default"

_UPDATABLE = {
    "name",
    "description",
    "max_agents",
    "min_agents",
    "scaling_policy",
    "default_agent",
    "default_model",
    "allowed_agents",
    "triggers",
    "status",
}
_JSON_FIELDS = {"allowed_agents", "triggers"}


def create_initiative(
    db: sqlite3.Connection,
    user_id: str,
    name: str,
    slug: str,
    description: str | None = None,
    max_agents: int = 100,
    min_agents: int = 1,
    scaling_policy: str = "auto",
    default_agent: str = "claude",
    default_model: str | None = None,
    allowed_agents: list[dict] | None = None,
    triggers: list[dict] | None = None,
    repository_ids: list[str] | None = None,
) -> Initiative:
    """Create a new initiative owned by ``user_id``."""
    if not name or not slug:
        raise ValidationError("Name and slug are required")
    if not SLUG_RE.match(slug):
        raise ValidationError("Slug must contain only lowercase letters, numbers, and hyphens")
    if scaling_policy not in SCALING_POLICIES:
        raise ValidationError(f"Invalid scaling policy: {scaling_policy}")
    if get_initiative_by_slug(db, user_id, slug):
        raise ValidationError("An initiative with this slug already exists")
    _check_repositories(db, user_id, repository_ids or [])

    initiative_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO initiatives (id, user_id, name, slug, description, max_agents, min_agents,
               scaling_policy, default_agent, default_model, allowed_agents, triggers, status)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active')""",
        (
            initiative_id,
            user_id,
            name,
            slug,
            description,
            max_agents,
            min_agents,
            scaling_policy,
            default_agent,
            default_model or DEFAULT_MODELS.get(default_agent),
            json.dumps(allowed_agents or []),
            json.dumps(triggers or []),
        ),
    )
    if repository_ids:
        _link_repositories(db, initiative_id, repository_ids)
    db.commit()
    return get_initiative(db, initiative_id)


def get_initiative(
    db: sqlite3.Connection,
    initiative_id: str,
    user_id: str | None = None,
) -> Initiative | None:
    """Get an initiative by ID. When ``user_id`` is given, other owners' rows are invisible."""
    query = "SELECT * FROM initiatives WHERE id = ?"
    params: list = [initiative_id]
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)
    row = db.execute(query, params).fetchone()
    if not row:
        return None
    return _row_to_initiative(db, row)


def get_initiative_by_slug(db: sqlite3.Connection, user_id: str, slug: str) -> Initiative | None:
    row = db.execute(
        "SELECT * FROM initiatives WHERE user_id = ? AND slug = ?", (user_id, slug)
    ).fetchone()
    if not row:
        return None
    return _row_to_initiative(db, row)


def list_initiatives(
    db: sqlite3.Connection,
    user_id: str,
    status: str | None = None,
) -> list[Initiative]:
    """List a user's initiatives, newest first."""
    query = "SELECT * FROM initiatives WHERE user_id = ?"
    params: list = [user_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_initiative(db, r) for r in rows]


def initiative_stats(db: sqlite3.Connection, initiative_id: str) -> dict[str, int]:
    """Count the initiative's tasks per lifecycle bucket."""
    rows = db.execute(
        "SELECT status, COUNT(*) AS n FROM tasks WHERE initiative_id = ? GROUP BY status",
        (initiative_id,),
    ).fetchall()
    counts = {r["status"]: r["n"] for r in rows}
    return {
        "running": counts.get("running", 0),
        "queued": counts.get("queued", 0),
        "completed": counts.get("completed", 0),
        "failed": counts.get("failed", 0),
    }


def update_initiative(
    db: sqlite3.Connection,
    initiative_id: str,
    user_id: str,
    repository_ids: list[str] | None = None,
    **kwargs,
) -> Initiative | None:
    """Update allow-listed fields; ``repository_ids`` replaces the repository links."""
    if not get_initiative(db, initiative_id, user_id):
        return None

    updates = {k: v for k, v in kwargs.items() if k in _UPDATABLE and v is not None}
    if "status" in updates and updates["status"] not in INITIATIVE_STATUSES:
        raise ValidationError(f"Invalid status: {updates['status']}")
    if "scaling_policy" in updates and updates["scaling_policy"] not in SCALING_POLICIES:
        raise ValidationError(f"Invalid scaling policy: {updates['scaling_policy']}")
    for key in _JSON_FIELDS & updates.keys():
        updates[key] = json.dumps(updates[key])
    if repository_ids is not None:
        _check_repositories(db, user_id, repository_ids)

    if updates:
        set_clause = ", ".join(f"{k} = ?" for k in updates)
        values = list(updates.values()) + [initiative_id]
        db.execute(
            f"UPDATE initiatives SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
            values,
        )

    if repository_ids is not None:
        db.execute("DELETE FROM initiative_repositories WHERE initiative_id = ?", (initiative_id,))
        _link_repositories(db, initiative_id, repository_ids)

    db.commit()
    return get_initiative(db, initiative_id)


def delete_initiative(db: sqlite3.Connection, initiative_id: str, user_id: str) -> bool:
    """Delete an initiative; tasks, links and messages cascade."""
    if not get_initiative(db, initiative_id, user_id):
        return False
    db.execute("DELETE FROM initiatives WHERE id = ?", (initiative_id,))
    db.commit()
    return True


def ensure_default_initiative(
    db: sqlite3.Connection,
    user_id: str,
    default_agent: str = "claude",
    default_model: str | None = None,
) -> Initiative:
    """Ensure the user has a 'default' initiative for quick tasks."""
    initiative = get_initiative_by_slug(db, user_id, DEFAULT_SLUG)
    if not initiative:
        initiative = create_initiative(
            db,
            user_id,
            "Default",
            DEFAULT_SLUG,
            description="Default initiative for quick tasks",
            default_agent=default_agent,
            default_model=default_model,
        )
    return initiative


def _check_repositories(db: sqlite3.Connection, user_id: str, repository_ids: list[str]):
    for repo_id in repository_ids:
        owned = db.execute(
            "SELECT id FROM repositories WHERE id = ? AND user_id = ?", (repo_id, user_id)
        ).fetchone()
        if not owned:
            raise NotFoundError(f"Repository not found: {repo_id}")


def _link_repositories(db: sqlite3.Connection, initiative_id: str, repository_ids: list[str]):
    for repo_id in dict.fromkeys(repository_ids):
        db.execute(
            "INSERT INTO initiative_repositories (initiative_id, repository_id) VALUES (?, ?)",
            (initiative_id, repo_id),
        )


def _row_to_initiative(db: sqlite3.Connection, row: sqlite3.Row) -> Initiative:
    links = db.execute(
        "SELECT repository_id FROM initiative_repositories WHERE initiative_id = ?",
        (row["id"],),
    ).fetchall()
    return Initiative(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        slug=row["slug"],
        description=row["description"],
        max_agents=row["max_agents"],
        min_agents=row["min_agents"],
        scaling_policy=row["scaling_policy"],
        default_agent=row["default_agent"],
        default_model=row["default_model"],
        allowed_agents=json.loads(row["allowed_agents"] or "[]"),
        triggers=json.loads(row["triggers"] or "[]"),
        status=row["status"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        repository_ids=[r["repository_id"] for r in links],
    )
