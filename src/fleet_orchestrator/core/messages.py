"""Agent messages exchanged between initiatives and tasks."""

import json
import sqlite3
import uuid
from datetime import datetime

from fleet_orchestrator.core.errors import NotFoundError, ValidationError
from fleet_orchestrator.db.engine import parse_dt, to_iso, utcnow
from fleet_orchestrator.db.models import MESSAGE_TYPES, AgentMessage

_OWNED_CLAUSE = (
    "(m.from_initiative_id IN (SELECT id FROM initiatives WHERE user_id = ?)"
    " OR m.to_initiative_id IN (SELECT id FROM initiatives WHERE user_id = ?))"
)


def create_message(
    db: sqlite3.Connection,
    from_initiative_id: str,
    to_initiative_id: str,
    type: str,
    subject: str,
    body: str | None = None,
    from_task_id: str | None = None,
    to_task_id: str | None = None,
    metadata: dict | None = None,
    suggested_actions: list[dict] | None = None,
    user_id: str | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> AgentMessage:
    """Create an unread message.

    When ``user_id`` is given both initiatives must belong to that user.
    """
    if not type or not subject:
        raise ValidationError("Type and subject are required")
    if type not in MESSAGE_TYPES:
        raise ValidationError(f"Invalid message type: {type}")

    if user_id is not None:
        ids = list({from_initiative_id, to_initiative_id})
        placeholders = ", ".join("?" for _ in ids)
        owned = db.execute(
            f"SELECT COUNT(*) FROM initiatives WHERE user_id = ? AND id IN ({placeholders})",
            [user_id, *ids],
        ).fetchone()[0]
        if owned != len(ids):
            raise NotFoundError("Initiative not found")

    message_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO agent_messages (id, from_initiative_id, to_initiative_id, from_task_id,
               to_task_id, type, subject, body, metadata, suggested_actions, read, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)""",
        (
            message_id,
            from_initiative_id,
            to_initiative_id,
            from_task_id,
            to_task_id,
            type,
            subject,
            body,
            json.dumps(metadata) if metadata is not None else None,
            json.dumps(suggested_actions) if suggested_actions is not None else None,
            to_iso(now or utcnow()),
        ),
    )
    if commit:
        db.commit()
    return get_message(db, message_id)


def get_message(
    db: sqlite3.Connection,
    message_id: str,
    user_id: str | None = None,
) -> AgentMessage | None:
    query = "SELECT m.* FROM agent_messages m WHERE m.id = ?"
    params: list = [message_id]
    if user_id is not None:
        query += f" AND {_OWNED_CLAUSE}"
        params.extend([user_id, user_id])
    row = db.execute(query, params).fetchone()
    if not row:
        return None
    return _row_to_message(row)


def list_messages(
    db: sqlite3.Connection,
    user_id: str,
    initiative_id: str | None = None,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AgentMessage], int]:
    """Messages to or from any of the user's initiatives, newest first."""
    where = _OWNED_CLAUSE
    params: list = [user_id, user_id]

    if initiative_id:
        where += " AND (m.from_initiative_id = ? OR m.to_initiative_id = ?)"
        params.extend([initiative_id, initiative_id])

    if unread_only:
        where += " AND m.read = 0"

    total = db.execute(f"SELECT COUNT(*) FROM agent_messages m WHERE {where}", params).fetchone()[0]
    rows = db.execute(
        f"""SELECT m.* FROM agent_messages m WHERE {where}
            ORDER BY m.created_at DESC, m.rowid DESC LIMIT ? OFFSET ?""",
        params + [limit, offset],
    ).fetchall()
    return [_row_to_message(r) for r in rows], total


def list_task_messages(db: sqlite3.Connection, task_id: str) -> list[AgentMessage]:
    rows = db.execute(
        "SELECT * FROM agent_messages WHERE from_task_id = ? ORDER BY created_at, rowid",
        (task_id,),
    ).fetchall()
    return [_row_to_message(r) for r in rows]


def mark_read(
    db: sqlite3.Connection,
    message_id: str,
    user_id: str,
    read: bool = True,
) -> AgentMessage | None:
    if not get_message(db, message_id, user_id):
        return None
    db.execute("UPDATE agent_messages SET read = ? WHERE id = ?", (int(read), message_id))
    db.commit()
    return get_message(db, message_id)


def _row_to_message(row: sqlite3.Row) -> AgentMessage:
    return AgentMessage(
        id=row["id"],
        from_initiative_id=row["from_initiative_id"],
        to_initiative_id=row["to_initiative_id"],
        type=row["type"],
        subject=row["subject"],
        from_task_id=row["from_task_id"],
        to_task_id=row["to_task_id"],
        body=row["body"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        suggested_actions=json.loads(row["suggested_actions"]) if row["suggested_actions"] else None,
        read=bool(row["read"]),
        created_at=parse_dt(row["created_at"]),
    )
