"""Git worktree provisioning tied to tasks and their agents."""

import logging
from typing import Callable

from work_reconciler.core.agents import AgentAccessor
from work_reconciler.core.projects import ProjectAccessor
from work_reconciler.core.tasks import TaskAccessor
from work_reconciler.db.models import Project, Task
from work_reconciler.integrations.git import GitClient, WORKTREE_PREFIX, WorktreeResult

logger = logging.getLogger(__name__)

GitClientFactory = Callable[[Project], GitClient]


class InfrastructureError(Exception):
    """Raised when a task's worktree cannot be provisioned."""


def worktree_name(task_id: str) -> str:
    return f"{WORKTREE_PREFIX}{task_id}"


def resolve_base_branch(task: Task, project: Project, tasks: TaskAccessor) -> str:
    """Top-level tasks branch from the project default; leaves from their root's branch."""
    if task.is_top_level:
        return project.default_branch

    root = tasks.get_top_level_parent(task.id)
    if root is None:
        raise InfrastructureError(f"Task {task.id} has no top-level parent")
    if not root.branch_name:
        raise InfrastructureError(
            f"Top-level task {root.id} has no branch yet; cannot provision {task.id}"
        )
    return root.branch_name


def provision_task_infrastructure(
    task: Task,
    agent_id: str | None,
    tasks: TaskAccessor,
    agents: AgentAccessor,
    projects: ProjectAccessor,
    git_client_factory: GitClientFactory = GitClient.for_project,
) -> WorktreeResult:
    """Create the worktree for a task.

    The branch is recorded on the task and the worktree path on the agent,
    so a new agent for the same task gets its own path without touching the
    task's history.
    """
    project = projects.find_by_id(task.project_id)
    if project is None:
        raise InfrastructureError(f"Task {task.id} has no associated project")

    base_branch = resolve_base_branch(task, project, tasks)
    client = git_client_factory(project)
    result = client.create_worktree(worktree_name(task.id), base_branch)

    tasks.update(task.id, branch_name=result.branch_name)
    if agent_id:
        agents.update(agent_id, worktree_path=result.worktree_path)

    logger.info(
        "Provisioned %s for task %s (agent %s)", result.worktree_path, task.id, agent_id
    )
    return result
