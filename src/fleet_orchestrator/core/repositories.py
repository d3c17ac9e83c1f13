"""Connected source repositories."""

import sqlite3
import uuid

from fleet_orchestrator.core.errors import ValidationError
from fleet_orchestrator.db.engine import parse_dt
from fleet_orchestrator.db.models import Repository

PROVIDERS = ("github", "gitlab", "bitbucket")

_UPDATABLE = {"default_branch", "repo_instructions", "webhooks_enabled"}


def create_repository(
    db: sqlite3.Connection,
    user_id: str,
    url: str,
    name: str,
    full_name: str,
    provider: str = "github",
    default_branch: str = "main",
    installation_id: str | None = None,
    repo_instructions: str | None = None,
) -> Repository:
    """Connect a repository for ``user_id``."""
    if not url or not name or not full_name:
        raise ValidationError("URL, name, and fullName are required")
    if provider not in PROVIDERS:
        raise ValidationError(f"Unsupported provider: {provider}")

    existing = db.execute(
        "SELECT id FROM repositories WHERE user_id = ? AND url = ?", (user_id, url)
    ).fetchone()
    if existing:
        raise ValidationError("Repository already connected")

    repo_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO repositories (id, user_id, url, provider, name, full_name, default_branch,
               installation_id, repo_instructions, webhooks_enabled)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)""",
        (
            repo_id,
            user_id,
            url,
            provider,
            name,
            full_name,
            default_branch,
            installation_id,
            repo_instructions,
        ),
    )
    db.commit()
    return get_repository(db, repo_id)


def get_repository(
    db: sqlite3.Connection,
    repo_id: str,
    user_id: str | None = None,
) -> Repository | None:
    query = "SELECT * FROM repositories WHERE id = ?"
    params: list = [repo_id]
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)
    row = db.execute(query, params).fetchone()
    if not row:
        return None
    return _row_to_repository(row)


def list_repositories(db: sqlite3.Connection, user_id: str) -> list[Repository]:
    rows = db.execute(
        "SELECT * FROM repositories WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
        (user_id,),
    ).fetchall()
    return [_row_to_repository(r) for r in rows]


def linked_initiative_ids(db: sqlite3.Connection, repo_id: str) -> list[str]:
    rows = db.execute(
        "SELECT initiative_id FROM initiative_repositories WHERE repository_id = ?",
        (repo_id,),
    ).fetchall()
    return [r["initiative_id"] for r in rows]


def repository_stats(db: sqlite3.Connection, repo_id: str) -> dict[str, int]:
    rows = db.execute(
        "SELECT status, COUNT(*) AS n FROM tasks WHERE repository_id = ? GROUP BY status",
        (repo_id,),
    ).fetchall()
    counts = {r["status"]: r["n"] for r in rows}
    return {
        "tasksCompleted": counts.get("completed", 0),
        "tasksFailed": counts.get("failed", 0),
        "tasksTotal": sum(counts.values()),
    }


def update_repository(
    db: sqlite3.Connection,
    repo_id: str,
    user_id: str,
    **kwargs,
) -> Repository | None:
    """Update repository settings."""
    if not get_repository(db, repo_id, user_id):
        return None

    updates = {k: v for k, v in kwargs.items() if k in _UPDATABLE and v is not None}
    if "webhooks_enabled" in updates:
        updates["webhooks_enabled"] = int(bool(updates["webhooks_enabled"]))
    if not updates:
        return get_repository(db, repo_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [repo_id]
    db.execute(
        f"UPDATE repositories SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_repository(db, repo_id)


def delete_repository(db: sqlite3.Connection, repo_id: str, user_id: str) -> bool:
    """Disconnect a repository, unlinking it from every initiative first."""
    if not get_repository(db, repo_id, user_id):
        return False
    db.execute("DELETE FROM initiative_repositories WHERE repository_id = ?", (repo_id,))
    db.execute("DELETE FROM repositories WHERE id = ?", (repo_id,))
    db.commit()
    return True


def _row_to_repository(row: sqlite3.Row) -> Repository:
    return Repository(
        id=row["id"],
        user_id=row["user_id"],
        url=row["url"],
        name=row["name"],
        full_name=row["full_name"],
        provider=row["provider"],
        default_branch=row["default_branch"],
        installation_id=row["installation_id"],
        repo_instructions=row["repo_instructions"],
        webhooks_enabled=bool(row["webhooks_enabled"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
