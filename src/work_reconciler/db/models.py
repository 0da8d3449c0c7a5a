"""Data models for work reconciler."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskState(str, Enum):
    PLANNING = "PLANNING"
    PENDING = "PENDING"
    BLOCKED = "BLOCKED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_TASK_STATES = (TaskState.COMPLETED, TaskState.FAILED)


class AgentType(str, Enum):
    SUPERVISOR = "SUPERVISOR"
    WORKER = "WORKER"


class ExecutionState(str, Enum):
    """What is actually true for an agent right now."""

    IDLE = "IDLE"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CRASHED = "CRASHED"


class DesiredExecutionState(str, Enum):
    """What the system wants to be true. Crashing is never desired."""

    ACTIVE = "ACTIVE"
    IDLE = "IDLE"
    PAUSED = "PAUSED"


class ProcessStatus(str, Enum):
    """Last process signal recorded by the lifecycle layer."""

    RUNNING = "RUNNING"
    IDLE = "IDLE"
    EXITED = "EXITED"
    CRASHED = "CRASHED"
    KILLED = "KILLED"


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    worktree_base_path: str | None = None
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    state: TaskState = TaskState.PENDING
    parent_id: str | None = None
    assigned_agent_id: str | None = None
    worktree_path: str | None = None
    branch_name: str | None = None
    attempts: int = 0
    failure_reason: str | None = None
    last_reconciled_at: datetime | None = None
    reconcile_failures: list[dict] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)

    @property
    def is_top_level(self) -> bool:
        return self.parent_id is None


@dataclass
class Agent:
    id: str
    type: AgentType
    execution_state: ExecutionState = ExecutionState.IDLE
    desired_execution_state: DesiredExecutionState = DesiredExecutionState.ACTIVE
    current_task_id: str | None = None
    worktree_path: str | None = None
    process_pid: int | None = None
    process_status: ProcessStatus | None = None
    process_started_at: datetime | None = None
    last_heartbeat: datetime | None = None
    state_changed_at: datetime | None = None
    last_reconciled_at: datetime | None = None
    reconcile_failures: list[dict] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None
