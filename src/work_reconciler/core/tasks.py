"""Task management operations and the task accessor used by the reconciler."""

import re
import sqlite3
from enum import Enum

from work_reconciler.db.engine import (
    load_reconcile_failures,
    now_iso,
    parse_db_time,
    push_reconcile_failure,
)
from work_reconciler.db.models import AgentType, ExecutionState, Task, TaskEvent, TaskState

_UPDATABLE_FIELDS = {
    "title",
    "description",
    "state",
    "assigned_agent_id",
    "worktree_path",
    "branch_name",
    "attempts",
    "failure_reason",
}


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    existing = db.execute(
        "SELECT id FROM tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = "default",
    description: str = "",
    parent_id: str | None = None,
    depends_on: list[str] | None = None,
) -> Task:
    """Create a new task.

    Top-level tasks start in PLANNING and wait for a supervisor; leaf tasks
    start in PENDING and wait for a worker.
    """
    if parent_id is not None and not get_task(db, parent_id):
        raise ValueError(f"Parent task not found: {parent_id}")
    for dep_id in depends_on or []:
        if not get_task(db, dep_id):
            raise ValueError(f"Dependency task not found: {dep_id}")

    task_id = _unique_id(db, slugify(title))
    state = TaskState.PLANNING if parent_id is None else TaskState.PENDING
    now = now_iso()

    db.execute(
        """INSERT INTO tasks
           (id, project_id, title, description, state, parent_id, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (task_id, project_id, title, description, state.value, parent_id, now, now),
    )

    if depends_on:
        for dep_id in depends_on:
            db.execute(
                "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
                (task_id, dep_id),
            )

    _log_event(db, task_id, "created", None, state.value)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _with_dependencies(db, _row_to_task(row))


def list_tasks(
    db: sqlite3.Connection,
    project_id: str = "default",
    state: str | None = None,
    parent_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters. Without a parent, lists top-level tasks."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if state:
        query += " AND state = ?"
        params.append(state)

    if parent_id is not None:
        query += " AND parent_id = ?"
        params.append(parent_id)
    else:
        query += " AND parent_id IS NULL"

    query += " ORDER BY created_at ASC"
    rows = db.execute(query, params).fetchall()
    return [_with_dependencies(db, _row_to_task(row)) for row in rows]


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task | None:
    """Update task fields. Returns the updated task, or None if it does not exist."""
    task = get_task(db, task_id)
    if not task:
        return None

    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
    if not fields:
        return task

    updates = {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}
    now = now_iso()
    new_state = updates.get("state")
    if new_state == TaskState.COMPLETED.value and task.state != TaskState.COMPLETED:
        updates["completed_at"] = now

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = ?")
    values = list(updates.values()) + [now, task_id]

    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    if new_state is not None and new_state != task.state.value:
        _log_event(db, task_id, "state_changed", task.state.value, new_state)
    if "assigned_agent_id" in updates and updates["assigned_agent_id"] != task.assigned_agent_id:
        _log_event(
            db, task_id, "agent_assigned", task.assigned_agent_id, updates["assigned_agent_id"]
        )
    db.commit()
    return get_task(db, task_id)


def get_top_level_parent(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Walk the parent chain up to the root.

    Returns None for a top-level task itself, or when the chain is broken.
    """
    task = get_task(db, task_id)
    if not task or task.parent_id is None:
        return None

    seen = {task.id}
    current = task
    while current.parent_id is not None:
        if current.parent_id in seen:
            return None  # Cycle in parent chain
        parent = get_task(db, current.parent_id)
        if not parent:
            return None
        seen.add(parent.id)
        current = parent
    return current


def is_blocked(db: sqlite3.Connection, task_id: str) -> bool:
    """A task is blocked while any of its dependencies is not COMPLETED."""
    row = db.execute(
        """SELECT COUNT(*) AS n FROM task_dependencies d
           JOIN tasks dep ON dep.id = d.depends_on_task_id
           WHERE d.task_id = ? AND dep.state != ?""",
        (task_id, TaskState.COMPLETED.value),
    ).fetchone()
    return row["n"] > 0


# ── Reconciliation queries ──────────────────────────────────────────────────


def find_top_level_tasks_needing_supervisors(db: sqlite3.Connection) -> list[Task]:
    """PLANNING top-level tasks with no supervisor or only a crashed one."""
    rows = db.execute(
        """SELECT t.* FROM tasks t
           WHERE t.parent_id IS NULL AND t.state = ?
             AND NOT EXISTS (
                 SELECT 1 FROM agents a
                 WHERE a.current_task_id = t.id AND a.type = ?
                   AND a.execution_state != ?
             )
           ORDER BY t.created_at ASC""",
        (TaskState.PLANNING.value, AgentType.SUPERVISOR.value, ExecutionState.CRASHED.value),
    ).fetchall()
    return [_with_dependencies(db, _row_to_task(r)) for r in rows]


def find_leaf_tasks_needing_workers(db: sqlite3.Connection) -> list[Task]:
    """Unassigned leaf tasks that may need a worker.

    Includes PENDING tasks, BLOCKED tasks (re-checked for unblocking) and
    IN_PROGRESS tasks whose worker went away.
    """
    rows = db.execute(
        """SELECT * FROM tasks
           WHERE parent_id IS NOT NULL AND assigned_agent_id IS NULL
             AND state IN (?, ?, ?)
           ORDER BY created_at ASC""",
        (TaskState.PENDING.value, TaskState.BLOCKED.value, TaskState.IN_PROGRESS.value),
    ).fetchall()
    return [_with_dependencies(db, _row_to_task(r)) for r in rows]


def find_tasks_with_missing_infrastructure(db: sqlite3.Connection) -> list[Task]:
    """IN_PROGRESS tasks that never got a branch."""
    rows = db.execute(
        """SELECT * FROM tasks
           WHERE state = ? AND branch_name IS NULL
           ORDER BY created_at ASC""",
        (TaskState.IN_PROGRESS.value,),
    ).fetchall()
    return [_with_dependencies(db, _row_to_task(r)) for r in rows]


def mark_task_reconciled(db: sqlite3.Connection, task_id: str) -> None:
    db.execute(
        "UPDATE tasks SET last_reconciled_at = ? WHERE id = ?",
        (now_iso(), task_id),
    )
    db.commit()


def record_task_reconcile_failure(
    db: sqlite3.Connection, task_id: str, message: str, action: str
) -> None:
    row = db.execute(
        "SELECT reconcile_failures FROM tasks WHERE id = ?", (task_id,)
    ).fetchone()
    if not row:
        return
    db.execute(
        "UPDATE tasks SET reconcile_failures = ? WHERE id = ?",
        (push_reconcile_failure(row["reconcile_failures"], message, action), task_id),
    )
    _log_event(db, task_id, "reconcile_failed", action, message)
    db.commit()


# ── Dependencies & history ──────────────────────────────────────────────────


def would_create_cycle(db: sqlite3.Connection, task_id: str, depends_on_id: str) -> bool:
    """Whether making ``task_id`` depend on ``depends_on_id`` closes a cycle.

    A task in a dependency cycle stays BLOCKED forever, so this includes the
    trivial self-dependency.
    """
    if task_id == depends_on_id:
        return True

    stack = [depends_on_id]
    seen = set()
    while stack:
        current = stack.pop()
        if current == task_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        rows = db.execute(
            "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
            (current,),
        ).fetchall()
        stack.extend(r["depends_on_task_id"] for r in rows)
    return False


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Add a dependency to an existing task."""
    task = get_task(db, task_id)
    if not task:
        return None
    dep = get_task(db, depends_on_id)
    if not dep:
        raise ValueError(f"Dependency task not found: {depends_on_id}")
    if depends_on_id in task.depends_on:
        return task  # Already exists
    if would_create_cycle(db, task_id, depends_on_id):
        raise ValueError(f"Dependency would create a cycle: {task_id} -> {depends_on_id}")
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
) -> Task | None:
    """Remove a dependency from a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_removed", depends_on_id, None)
    db.commit()
    return get_task(db, task_id)


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
            created_at=parse_db_time(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        """INSERT INTO task_events (task_id, event_type, old_value, new_value, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (task_id, event_type, old_value, new_value, now_iso()),
    )


# ── Accessor ────────────────────────────────────────────────────────────────


class TaskAccessor:
    """Task reads and writes the reconciler depends on, bound to one connection."""

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def find_by_id(self, task_id: str) -> Task | None:
        return get_task(self.db, task_id)

    def find_top_level_tasks_needing_supervisors(self) -> list[Task]:
        return find_top_level_tasks_needing_supervisors(self.db)

    def find_leaf_tasks_needing_workers(self) -> list[Task]:
        return find_leaf_tasks_needing_workers(self.db)

    def find_tasks_with_missing_infrastructure(self) -> list[Task]:
        return find_tasks_with_missing_infrastructure(self.db)

    def get_top_level_parent(self, task_id: str) -> Task | None:
        return get_top_level_parent(self.db, task_id)

    def is_blocked(self, task_id: str) -> bool:
        return is_blocked(self.db, task_id)

    def update(self, task_id: str, **fields) -> Task | None:
        return update_task(self.db, task_id, **fields)

    def mark_reconciled(self, task_id: str) -> None:
        mark_task_reconciled(self.db, task_id)

    def record_reconcile_failure(self, task_id: str, message: str, action: str) -> None:
        record_task_reconcile_failure(self.db, task_id, message, action)


def _with_dependencies(db: sqlite3.Connection, task: Task) -> Task:
    deps = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
        (task.id,),
    ).fetchall()
    task.depends_on = [d["depends_on_task_id"] for d in deps]
    return task


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"],
        state=TaskState(row["state"]),
        parent_id=row["parent_id"],
        assigned_agent_id=row["assigned_agent_id"],
        worktree_path=row["worktree_path"],
        branch_name=row["branch_name"],
        attempts=row["attempts"] or 0,
        failure_reason=row["failure_reason"],
        last_reconciled_at=parse_db_time(row["last_reconciled_at"]),
        reconcile_failures=load_reconcile_failures(row["reconcile_failures"]),
        created_at=parse_db_time(row["created_at"]),
        updated_at=parse_db_time(row["updated_at"]),
        completed_at=parse_db_time(row["completed_at"]),
    )
