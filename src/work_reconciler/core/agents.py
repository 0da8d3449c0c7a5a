"""Agent records: creation, queries, and the agent accessor used by the reconciler.

Agents carry two separate execution-state fields. ``desired_execution_state``
is the declarative target; ``execution_state`` is what is actually true. The
reconciler drives the latter toward the former and never merges the two.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from enum import Enum

from work_reconciler.db.engine import (
    load_reconcile_failures,
    now_iso,
    parse_db_time,
    push_reconcile_failure,
    to_db_time,
    utc_now,
)
from work_reconciler.db.models import (
    Agent,
    AgentType,
    DesiredExecutionState,
    ExecutionState,
    ProcessStatus,
    TERMINAL_TASK_STATES,
)

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "execution_state",
    "desired_execution_state",
    "current_task_id",
    "worktree_path",
    "process_pid",
    "process_status",
    "process_started_at",
    "last_heartbeat",
}
_STATE_FIELDS = {"execution_state", "desired_execution_state"}


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        type=AgentType(row["type"]),
        execution_state=ExecutionState(row["execution_state"]),
        desired_execution_state=DesiredExecutionState(row["desired_execution_state"]),
        current_task_id=row["current_task_id"],
        worktree_path=row["worktree_path"],
        process_pid=row["process_pid"],
        process_status=ProcessStatus(row["process_status"]) if row["process_status"] else None,
        process_started_at=parse_db_time(row["process_started_at"]),
        last_heartbeat=parse_db_time(row["last_heartbeat"]),
        state_changed_at=parse_db_time(row["state_changed_at"]),
        last_reconciled_at=parse_db_time(row["last_reconciled_at"]),
        reconcile_failures=load_reconcile_failures(row["reconcile_failures"]),
        created_at=parse_db_time(row["created_at"]),
        updated_at=parse_db_time(row["updated_at"]),
    )


def _to_column(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_db_time(value)
    return value


# ── CRUD ────────────────────────────────────────────────────────────────────


def create_agent(
    db: sqlite3.Connection,
    type: AgentType,
    current_task_id: str,
    desired_execution_state: DesiredExecutionState = DesiredExecutionState.ACTIVE,
    execution_state: ExecutionState = ExecutionState.IDLE,
) -> Agent:
    """Create an agent record for a task.

    The new agent counts as reconciled at creation: its desired/actual pair
    is exactly what was asked for, and the lifecycle layer picks it up from
    there.
    """
    agent_type = AgentType(type)
    agent_id = f"{agent_type.value.lower()}-{uuid.uuid4().hex[:8]}"
    now = now_iso()
    db.execute(
        """INSERT INTO agents
           (id, type, execution_state, desired_execution_state, current_task_id,
            state_changed_at, last_reconciled_at, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            agent_id,
            agent_type.value,
            ExecutionState(execution_state).value,
            DesiredExecutionState(desired_execution_state).value,
            current_task_id,
            now, now, now, now,
        ),
    )
    db.commit()
    return get_agent(db, agent_id)


def get_agent(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    """Get an agent by its ID."""
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_agents(
    db: sqlite3.Connection,
    type: AgentType | str | None = None,
    execution_state: ExecutionState | str | None = None,
    current_task_id: str | None = None,
) -> list[Agent]:
    """List agents, optionally filtered by type, actual state, and task."""
    query = "SELECT * FROM agents WHERE 1=1"
    params: list = []
    if type:
        query += " AND type = ?"
        params.append(_to_column(type))
    if execution_state:
        query += " AND execution_state = ?"
        params.append(_to_column(execution_state))
    if current_task_id:
        query += " AND current_task_id = ?"
        params.append(current_task_id)
    query += " ORDER BY created_at ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent(r) for r in rows]


def update_agent(db: sqlite3.Connection, agent_id: str, **fields) -> Agent | None:
    """Update agent fields. Returns the updated agent, or None if it does not exist."""
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update agent fields: {', '.join(sorted(unknown))}")
    if not get_agent(db, agent_id):
        return None
    if not fields:
        return get_agent(db, agent_id)

    now = now_iso()
    updates = {k: _to_column(v) for k, v in fields.items()}
    if _STATE_FIELDS & set(updates):
        updates["state_changed_at"] = now
    updates["updated_at"] = now

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    db.execute(
        f"UPDATE agents SET {set_clause} WHERE id = ?",
        list(updates.values()) + [agent_id],
    )
    db.commit()
    return get_agent(db, agent_id)


def delete_agent(db: sqlite3.Connection, agent_id: str) -> bool:
    """Delete an agent record."""
    cur = db.execute("DELETE FROM agents WHERE id = ?", (agent_id,))
    db.commit()
    return cur.rowcount > 0


# ── Reconciliation queries ──────────────────────────────────────────────────


def find_supervisor_by_top_level_task_id(
    db: sqlite3.Connection, task_id: str
) -> Agent | None:
    """Most recent supervisor created for a top-level task."""
    row = db.execute(
        """SELECT * FROM agents
           WHERE type = ? AND current_task_id = ?
           ORDER BY created_at DESC LIMIT 1""",
        (AgentType.SUPERVISOR.value, task_id),
    ).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def count_active_by_type(db: sqlite3.Connection, type: AgentType) -> int:
    """Count agents of a type that still occupy a concurrency slot.

    An agent occupies a slot unless it has crashed or its task is finished.
    """
    terminal = [s.value for s in TERMINAL_TASK_STATES]
    row = db.execute(
        f"""SELECT COUNT(*) AS n FROM agents a
            LEFT JOIN tasks t ON t.id = a.current_task_id
            WHERE a.type = ? AND a.execution_state != ?
              AND (t.id IS NULL OR t.state NOT IN ({', '.join('?' * len(terminal))}))""",
        [AgentType(type).value, ExecutionState.CRASHED.value, *terminal],
    ).fetchone()
    return row["n"]


def find_potentially_crashed_agents(
    db: sqlite3.Connection, threshold_minutes: int
) -> list[Agent]:
    """ACTIVE agents whose heartbeat (or creation, if none yet) is older than the threshold."""
    cutoff = to_db_time(utc_now() - timedelta(minutes=threshold_minutes))
    rows = db.execute(
        """SELECT * FROM agents
           WHERE execution_state = ?
             AND COALESCE(last_heartbeat, created_at) < ?
           ORDER BY created_at ASC""",
        (ExecutionState.ACTIVE.value, cutoff),
    ).fetchall()
    return [_row_to_agent(r) for r in rows]


def find_agents_needing_reconciliation(db: sqlite3.Connection) -> list[Agent]:
    """Agents never reconciled, or whose states diverged since the last reconcile."""
    rows = db.execute(
        """SELECT * FROM agents
           WHERE last_reconciled_at IS NULL
              OR (execution_state != desired_execution_state
                  AND state_changed_at > last_reconciled_at)
           ORDER BY created_at ASC""",
    ).fetchall()
    return [_row_to_agent(r) for r in rows]


def mark_agent_crashed(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    """Demote actual state to CRASHED. The desired state is left alone."""
    now = now_iso()
    db.execute(
        """UPDATE agents
           SET execution_state = ?, state_changed_at = ?, updated_at = ?
           WHERE id = ?""",
        (ExecutionState.CRASHED.value, now, now, agent_id),
    )
    db.commit()
    return get_agent(db, agent_id)


def mark_agent_reconciled(db: sqlite3.Connection, agent_id: str) -> None:
    db.execute(
        "UPDATE agents SET last_reconciled_at = ? WHERE id = ?",
        (now_iso(), agent_id),
    )
    db.commit()


def record_agent_reconcile_failure(
    db: sqlite3.Connection, agent_id: str, message: str, action: str
) -> None:
    row = db.execute(
        "SELECT reconcile_failures FROM agents WHERE id = ?", (agent_id,)
    ).fetchone()
    if not row:
        return
    db.execute(
        "UPDATE agents SET reconcile_failures = ? WHERE id = ?",
        (push_reconcile_failure(row["reconcile_failures"], message, action), agent_id),
    )
    db.commit()


# ── Lifecycle write surface ──────────────────────────────────────────────────
# Written by whatever supervises the real processes; never by the reconciler.


def record_heartbeat(db: sqlite3.Connection, agent_id: str) -> Agent | None:
    return update_agent(db, agent_id, last_heartbeat=utc_now())


def record_process_start(db: sqlite3.Connection, agent_id: str, pid: int) -> Agent | None:
    now = utc_now()
    return update_agent(
        db, agent_id,
        process_pid=pid,
        process_status=ProcessStatus.RUNNING,
        process_started_at=now,
        last_heartbeat=now,
    )


def record_process_status(
    db: sqlite3.Connection, agent_id: str, status: ProcessStatus
) -> Agent | None:
    logger.debug("Agent %s process status -> %s", agent_id, ProcessStatus(status).value)
    return update_agent(db, agent_id, process_status=ProcessStatus(status))


# ── Accessor ────────────────────────────────────────────────────────────────


class AgentAccessor:
    """Agent reads and writes the reconciler depends on, bound to one connection."""

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def find_by_id(self, agent_id: str) -> Agent | None:
        return get_agent(self.db, agent_id)

    def find_supervisor_by_top_level_task_id(self, task_id: str) -> Agent | None:
        return find_supervisor_by_top_level_task_id(self.db, task_id)

    def count_active_by_type(self, type: AgentType) -> int:
        return count_active_by_type(self.db, type)

    def find_potentially_crashed_agents(self, threshold_minutes: int) -> list[Agent]:
        return find_potentially_crashed_agents(self.db, threshold_minutes)

    def find_agents_needing_reconciliation(self) -> list[Agent]:
        return find_agents_needing_reconciliation(self.db)

    def create(
        self,
        type: AgentType,
        current_task_id: str,
        desired_execution_state: DesiredExecutionState = DesiredExecutionState.ACTIVE,
        execution_state: ExecutionState = ExecutionState.IDLE,
    ) -> Agent:
        return create_agent(
            self.db, type, current_task_id, desired_execution_state, execution_state
        )

    def update(self, agent_id: str, **fields) -> Agent | None:
        return update_agent(self.db, agent_id, **fields)

    def delete(self, agent_id: str) -> bool:
        return delete_agent(self.db, agent_id)

    def mark_as_crashed(self, agent_id: str) -> Agent | None:
        return mark_agent_crashed(self.db, agent_id)

    def mark_reconciled(self, agent_id: str) -> None:
        mark_agent_reconciled(self.db, agent_id)

    def record_reconcile_failure(self, agent_id: str, message: str, action: str) -> None:
        record_agent_reconcile_failure(self.db, agent_id, message, action)

    def list(self, **filters) -> list[Agent]:
        return list_agents(self.db, **filters)
