"""Project management operations."""

import sqlite3

from work_reconciler.db.engine import now_iso, parse_db_time
from work_reconciler.db.models import Project


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    repo_path: str,
    default_branch: str = "main",
    slack_channel: str | None = None,
    worktree_base_path: str | None = None,
) -> Project:
    """Create a new project."""
    now = now_iso()
    db.execute(
        """INSERT INTO projects
           (id, name, repo_path, default_branch, worktree_base_path, slack_channel,
            created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (project_id, name, repo_path, default_branch, worktree_base_path,
         slack_channel, now, now),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def ensure_default_project(db: sqlite3.Connection, repo_path: str) -> Project:
    """Ensure a 'default' project exists, creating it if needed."""
    project = get_project(db, "default")
    if not project:
        project = create_project(db, "default", "Default Project", repo_path)
    return project


class ProjectAccessor:
    """Read-only project lookups used by infrastructure provisioning."""

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def find_by_id(self, project_id: str) -> Project | None:
        return get_project(self.db, project_id)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        repo_path=row["repo_path"],
        default_branch=row["default_branch"],
        worktree_base_path=row["worktree_base_path"],
        slack_channel=row["slack_channel"],
        created_at=parse_db_time(row["created_at"]),
        updated_at=parse_db_time(row["updated_at"]),
    )
