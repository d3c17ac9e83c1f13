"""User accounts and their stored execution-provider credential."""

import secrets
import sqlite3
import uuid

from fleet_orchestrator.db.engine import parse_dt
from fleet_orchestrator.db.models import User


def create_user(
    db: sqlite3.Connection,
    email: str,
    name: str | None = None,
    github_token: str | None = None,
    github_username: str | None = None,
) -> User:
    """Create a user and issue an API token for it."""
    user_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO users (id, email, name, api_token, github_token, github_username)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (user_id, email, name, secrets.token_urlsafe(32), github_token, github_username),
    )
    db.commit()
    return get_user(db, user_id)


def get_user(db: sqlite3.Connection, user_id: str) -> User | None:
    row = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return None
    return _row_to_user(row)


def get_user_by_email(db: sqlite3.Connection, email: str) -> User | None:
    row = db.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    if not row:
        return None
    return _row_to_user(row)


def get_user_by_token(db: sqlite3.Connection, token: str) -> User | None:
    """Resolve a bearer token to its user."""
    if not token:
        return None
    row = db.execute("SELECT * FROM users WHERE api_token = ?", (token,)).fetchone()
    if not row:
        return None
    return _row_to_user(row)


def list_users(db: sqlite3.Connection) -> list[User]:
    rows = db.execute("SELECT * FROM users ORDER BY created_at").fetchall()
    return [_row_to_user(r) for r in rows]


def set_github_connection(
    db: sqlite3.Connection,
    user_id: str,
    github_token: str | None,
    github_username: str | None = None,
) -> User | None:
    """Store (or clear) the repository credential forwarded to the execution provider."""
    if not get_user(db, user_id):
        return None
    db.execute(
        """UPDATE users SET github_token = ?, github_username = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (github_token, github_username, user_id),
    )
    db.commit()
    return get_user(db, user_id)


def rotate_api_token(db: sqlite3.Connection, user_id: str) -> User | None:
    if not get_user(db, user_id):
        return None
    db.execute(
        "UPDATE users SET api_token = ?, updated_at = datetime('now') WHERE id = ?",
        (secrets.token_urlsafe(32), user_id),
    )
    db.commit()
    return get_user(db, user_id)


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        api_token=row["api_token"],
        name=row["name"],
        github_token=row["github_token"],
        github_username=row["github_username"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
