"""SQLite database connection management and schema initialization."""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    repo_path TEXT NOT NULL,
    default_branch TEXT DEFAULT 'main',
    worktree_base_path TEXT,
    slack_channel TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    state TEXT NOT NULL DEFAULT 'PENDING' CHECK (state IN
        ('PLANNING', 'PENDING', 'BLOCKED', 'IN_PROGRESS', 'COMPLETED', 'FAILED')),
    parent_id TEXT REFERENCES tasks(id),
    assigned_agent_id TEXT,
    worktree_path TEXT,
    branch_name TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    failure_reason TEXT,
    last_reconciled_at TEXT,
    reconcile_failures TEXT NOT NULL DEFAULT '[]',
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

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
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL CHECK (type IN ('SUPERVISOR', 'WORKER')),
    execution_state TEXT NOT NULL DEFAULT 'IDLE' CHECK (execution_state IN
        ('IDLE', 'ACTIVE', 'PAUSED', 'CRASHED')),
    desired_execution_state TEXT NOT NULL DEFAULT 'ACTIVE' CHECK (desired_execution_state IN
        ('ACTIVE', 'IDLE', 'PAUSED')),
    current_task_id TEXT REFERENCES tasks(id),
    worktree_path TEXT,
    process_pid INTEGER,
    process_status TEXT,
    process_started_at TEXT,
    last_heartbeat TEXT,
    state_changed_at TEXT,
    last_reconciled_at TEXT,
    reconcile_failures TEXT NOT NULL DEFAULT '[]',
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_id);
CREATE INDEX IF NOT EXISTS idx_tasks_state ON tasks(state);
CREATE INDEX IF NOT EXISTS idx_agents_task ON agents(current_task_id);
CREATE INDEX IF NOT EXISTS idx_agents_execution_state ON agents(execution_state);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE projects ADD COLUMN worktree_base_path TEXT",
        "ALTER TABLE tasks ADD COLUMN attempts INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE agents ADD COLUMN process_pid INTEGER",
        "ALTER TABLE agents ADD COLUMN state_changed_at TEXT",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists
    conn.commit()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime | None) -> str | None:
    """Serialize a timestamp so that string order matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_db_time(utc_now())


def parse_db_time(val: str | None) -> datetime | None:
    if val is None:
        return None
    parsed = datetime.fromisoformat(val)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


MAX_RECONCILE_FAILURES = 10


def push_reconcile_failure(raw: str | None, message: str, action: str) -> str:
    """Append a failure entry to a JSON list column, keeping the most recent ones."""
    failures = json.loads(raw) if raw else []
    failures.append({"error": message, "action": action, "at": now_iso()})
    return json.dumps(failures[-MAX_RECONCILE_FAILURES:])


def load_reconcile_failures(raw: str | None) -> list[dict]:
    return json.loads(raw) if raw else []


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
