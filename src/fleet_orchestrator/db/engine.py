"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT,
    api_token TEXT NOT NULL UNIQUE,
    github_token TEXT,
    github_username TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS initiatives (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    slug TEXT NOT NULL,
    description TEXT,
    max_agents INTEGER DEFAULT 100,
    min_agents INTEGER DEFAULT 1,
    scaling_policy TEXT DEFAULT 'auto' CHECK (scaling_policy IN ('auto', 'manual')),
    default_agent TEXT DEFAULT 'claude',
    default_model TEXT,
    allowed_agents TEXT DEFAULT '[]',
    triggers TEXT DEFAULT '[]',
    status TEXT DEFAULT 'active' CHECK (status IN ('active', 'paused', 'archived')),
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE(user_id, slug)
);

CREATE TABLE IF NOT EXISTS repositories (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    provider TEXT DEFAULT 'github' CHECK (provider IN ('github', 'gitlab', 'bitbucket')),
    name TEXT NOT NULL,
    full_name TEXT NOT NULL,
    default_branch TEXT DEFAULT 'main',
    installation_id TEXT,
    repo_instructions TEXT,
    webhooks_enabled INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE(user_id, url)
);

CREATE TABLE IF NOT EXISTS initiative_repositories (
    initiative_id TEXT NOT NULL REFERENCES initiatives(id) ON DELETE CASCADE,
    repository_id TEXT NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    PRIMARY KEY (initiative_id, repository_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    initiative_id TEXT NOT NULL REFERENCES initiatives(id) ON DELETE CASCADE,
    repository_id TEXT REFERENCES repositories(id) ON DELETE SET NULL,
    prompt TEXT NOT NULL,
    repo_url TEXT,
    branch TEXT,
    agent TEXT,
    model TEXT,
    type TEXT DEFAULT 'custom',
    priority TEXT DEFAULT 'medium' CHECK (priority IN ('critical', 'high', 'medium', 'low')),
    status TEXT DEFAULT 'queued' CHECK (
        status IN ('queued', 'assigned', 'running', 'completed', 'failed', 'cancelled')
    ),
    assigned_agents INTEGER DEFAULT 1,
    progress INTEGER DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    eta TEXT,
    blackbox_task_id TEXT,
    result TEXT,
    artifacts TEXT DEFAULT '[]',
    error TEXT,
    queued_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_tasks_blackbox_id ON tasks(blackbox_task_id);

CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    depends_on_task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    PRIMARY KEY (task_id, depends_on_task_id)
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agent_messages (
    id TEXT PRIMARY KEY,
    from_initiative_id TEXT NOT NULL REFERENCES initiatives(id) ON DELETE CASCADE,
    to_initiative_id TEXT NOT NULL REFERENCES initiatives(id) ON DELETE CASCADE,
    from_task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
    to_task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
    type TEXT NOT NULL CHECK (type IN ('HANDOFF', 'RESPONSE', 'ALERT', 'REQUEST', 'STATUS')),
    subject TEXT NOT NULL,
    body TEXT,
    metadata TEXT,
    suggested_actions TEXT,
    read INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metrics_hourly (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hour TEXT NOT NULL UNIQUE,
    tasks_created INTEGER DEFAULT 0,
    tasks_completed INTEGER DEFAULT 0,
    tasks_failed INTEGER DEFAULT 0,
    prs_created INTEGER DEFAULT 0,
    lines_added INTEGER DEFAULT 0,
    lines_removed INTEGER DEFAULT 0,
    files_changed INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS webhook_deliveries (
    external_task_id TEXT NOT NULL,
    event TEXT NOT NULL,
    received_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (external_task_id, event)
);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _run_migrations(conn: sqlite3.Connection):
    """Add columns introduced after a database was first created."""
    migrations = [
        "ALTER TABLE tasks ADD COLUMN repo_url TEXT",
        "ALTER TABLE tasks ADD COLUMN branch TEXT",
        "ALTER TABLE tasks ADD COLUMN agent TEXT",
        "ALTER TABLE tasks ADD COLUMN model TEXT",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for a request-lifetime database handle."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
