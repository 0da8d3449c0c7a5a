"""Level-triggered reconciliation of tasks and agents.

One cycle compares what the database says should be true with what is true
and writes the difference back. Phases run in a fixed order: crash
detection, top-level tasks, leaf tasks, then agent execution states. Crash
detection goes first so a dead supervisor is already marked before the
top-level phase decides whether to restart it.

The engine only writes state fields. Starting and stopping the real agent
processes belongs to the lifecycle layer watching those fields.
"""

import logging

from work_reconciler.config import Config
from work_reconciler.core.agents import AgentAccessor
from work_reconciler.core.crash_detection import detect_crashes
from work_reconciler.core.projects import ProjectAccessor
from work_reconciler.core.registry import ProcessRegistry
from work_reconciler.core.results import ReconciliationResult
from work_reconciler.core.tasks import TaskAccessor
from work_reconciler.core.worktrees import GitClientFactory, provision_task_infrastructure
from work_reconciler.db.models import (
    Agent,
    AgentType,
    DesiredExecutionState,
    ExecutionState,
    TERMINAL_TASK_STATES,
    Task,
    TaskState,
)
from work_reconciler.integrations.git import GitClient

logger = logging.getLogger(__name__)

# desired -> {current actual: new actual}. Missing pairs are no-ops.
STATE_TRANSITIONS: dict[DesiredExecutionState, dict[ExecutionState, ExecutionState]] = {
    DesiredExecutionState.ACTIVE: {
        ExecutionState.IDLE: ExecutionState.ACTIVE,
        ExecutionState.CRASHED: ExecutionState.ACTIVE,
        ExecutionState.PAUSED: ExecutionState.ACTIVE,
    },
    DesiredExecutionState.IDLE: {
        ExecutionState.ACTIVE: ExecutionState.IDLE,
        ExecutionState.PAUSED: ExecutionState.IDLE,
        ExecutionState.CRASHED: ExecutionState.IDLE,
    },
    DesiredExecutionState.PAUSED: {
        # An agent that was never started cannot be paused.
        ExecutionState.ACTIVE: ExecutionState.PAUSED,
    },
}


def next_execution_state(agent: Agent) -> ExecutionState | None:
    """The actual state an agent should move to, or None if nothing changes."""
    if agent.execution_state.value == agent.desired_execution_state.value:
        return None
    return STATE_TRANSITIONS[agent.desired_execution_state].get(agent.execution_state)


class Reconciler:
    def __init__(
        self,
        tasks: TaskAccessor,
        agents: AgentAccessor,
        projects: ProjectAccessor,
        registry: ProcessRegistry,
        config: Config,
        git_client_factory: GitClientFactory = GitClient.for_project,
    ):
        self.tasks = tasks
        self.agents = agents
        self.projects = projects
        self.registry = registry
        self.config = config
        self.git_client_factory = git_client_factory

    # ── Entry points ────────────────────────────────────────────────────────

    def reconcile_all(self) -> ReconciliationResult:
        """Run one full cycle. Never raises; failures are reported in the result."""
        result = ReconciliationResult()
        try:
            self._run_phase("detect_crashes", self._detect_crashes, result)
            self._run_phase("reconcile_top_level_tasks", self._reconcile_top_level_tasks, result)
            self._run_phase("reconcile_leaf_tasks", self._reconcile_leaf_tasks, result)
            self._run_phase("reconcile_agent_states", self._reconcile_agent_states, result)
        except Exception as e:
            logger.exception("Reconciliation cycle aborted")
            result.add_error("system", "system", e, "reconcile_all")

        result.success = not result.errors
        logger.info(
            "Reconciled %d task(s), %d agent(s): %d supervisor(s) and %d worker(s) created, "
            "%d crash(es), %d error(s)",
            result.tasks_reconciled,
            result.agents_reconciled,
            result.supervisors_created,
            result.workers_created,
            result.crashes_detected,
            len(result.errors),
        )
        return result

    def reconcile_task(self, task_id: str) -> None:
        """Reconcile one task right away. Failures are recorded on the task."""
        task = self.tasks.find_by_id(task_id)
        if task is None:
            logger.warning("Cannot reconcile task %s: not found", task_id)
            return

        result = ReconciliationResult()
        try:
            if task.is_top_level:
                self._reconcile_top_level_task(task, result)
            else:
                self._reconcile_leaf_task(task, result)
            current = self.tasks.find_by_id(task_id)
            if current and current.state == TaskState.IN_PROGRESS and not current.branch_name:
                self._repair_infrastructure(current)
            self.tasks.mark_reconciled(task_id)
        except Exception as e:
            logger.error("Failed to reconcile task %s: %s", task_id, e)
            self.tasks.record_reconcile_failure(task_id, str(e), "reconcile_task")

    def reconcile_agent(self, agent_id: str) -> None:
        """Reconcile one agent's execution state. Failures are recorded on the agent."""
        agent = self.agents.find_by_id(agent_id)
        if agent is None:
            logger.warning("Cannot reconcile agent %s: not found", agent_id)
            return

        try:
            self._reconcile_agent_state(agent)
        except Exception as e:
            logger.error("Failed to reconcile agent %s: %s", agent_id, e)
            self.agents.record_reconcile_failure(agent_id, str(e), "reconcile_agent")

    # ── Phases ──────────────────────────────────────────────────────────────

    def _run_phase(self, name: str, phase, result: ReconciliationResult) -> None:
        try:
            phase(result)
        except Exception as e:
            logger.exception("Reconciliation phase %s failed", name)
            result.add_error("system", "system", e, name)

    def _detect_crashes(self, result: ReconciliationResult) -> None:
        crashed = detect_crashes(
            self.agents,
            self.registry,
            self.config.agent_heartbeat_threshold_minutes,
            result.errors,
        )
        result.crashed_agent_ids.extend(crashed)
        result.crashes_detected += len(crashed)

    def _reconcile_top_level_tasks(self, result: ReconciliationResult) -> None:
        for task in self.tasks.find_top_level_tasks_needing_supervisors():
            try:
                self._reconcile_top_level_task(task, result)
                self.tasks.mark_reconciled(task.id)
                result.tasks_reconciled += 1
            except Exception as e:
                logger.error("Failed to reconcile top-level task %s: %s", task.id, e)
                result.add_error("task", task.id, e, "reconcile_task")

    def _reconcile_leaf_tasks(self, result: ReconciliationResult) -> None:
        for task in self.tasks.find_leaf_tasks_needing_workers():
            try:
                self._reconcile_leaf_task(task, result)
                self.tasks.mark_reconciled(task.id)
                result.tasks_reconciled += 1
            except Exception as e:
                logger.error("Failed to reconcile leaf task %s: %s", task.id, e)
                result.add_error("task", task.id, e, "reconcile_task")

        for task in self.tasks.find_tasks_with_missing_infrastructure():
            try:
                self._repair_infrastructure(task)
                result.infrastructure_created += 1
            except Exception as e:
                logger.error("Failed to provision missing infrastructure for %s: %s", task.id, e)
                result.add_error("task", task.id, e, "create_infrastructure")

    def _reconcile_agent_states(self, result: ReconciliationResult) -> None:
        for agent in self.agents.find_agents_needing_reconciliation():
            try:
                self._reconcile_agent_state(agent)
                result.agents_reconciled += 1
            except Exception as e:
                logger.error("Failed to reconcile agent %s: %s", agent.id, e)
                result.add_error("agent", agent.id, e, "reconcile_agent")

    # ── Single-entity logic ─────────────────────────────────────────────────

    def _reconcile_top_level_task(self, task: Task, result: ReconciliationResult) -> None:
        current = self.tasks.find_by_id(task.id)
        if current is None or current.state != TaskState.PLANNING:
            return  # Supervisors are only started for tasks still being planned

        supervisor = self.agents.find_supervisor_by_top_level_task_id(task.id)
        if supervisor is not None:
            if supervisor.execution_state == ExecutionState.CRASHED:
                logger.info("Restarting crashed supervisor %s for %s", supervisor.id, task.id)
                self.agents.update(
                    supervisor.id,
                    desired_execution_state=DesiredExecutionState.ACTIVE,
                    execution_state=ExecutionState.IDLE,
                )
            return

        # Count-then-create is not atomic. Only one cycle runs at a time and
        # an overshoot from a concurrent single-task call stops growing on the
        # next cycle.
        active = self.agents.count_active_by_type(AgentType.SUPERVISOR)
        if active >= self.config.max_concurrent_supervisors:
            logger.info(
                "Supervisor limit reached (%d/%d); %s waits",
                active, self.config.max_concurrent_supervisors, task.id,
            )
            result.supervisors_skipped_due_to_limit += 1
            return

        supervisor = self.agents.create(
            type=AgentType.SUPERVISOR,
            current_task_id=task.id,
            desired_execution_state=DesiredExecutionState.ACTIVE,
            execution_state=ExecutionState.IDLE,
        )
        logger.info("Created supervisor %s for %s", supervisor.id, task.id)
        self._provision_or_discard(task, supervisor)
        result.supervisors_created += 1
        result.infrastructure_created += 1

    def _reconcile_leaf_task(self, task: Task, result: ReconciliationResult) -> None:
        current = self.tasks.find_by_id(task.id)
        if current is None or current.assigned_agent_id:
            return  # Assigned since the query ran
        if current.state in TERMINAL_TASK_STATES:
            return

        if self.tasks.is_blocked(current.id):
            if current.state != TaskState.BLOCKED:
                logger.info("Task %s is blocked on unfinished dependencies", current.id)
                self.tasks.update(current.id, state=TaskState.BLOCKED)
                result.tasks_blocked += 1
            return
        if current.state == TaskState.BLOCKED:
            logger.info("Task %s unblocked", current.id)
            self.tasks.update(current.id, state=TaskState.PENDING)

        if current.attempts >= self.config.max_worker_attempts:
            reason = f"Worker failed {current.attempts} time(s); giving up"
            logger.warning("Task %s: %s", current.id, reason)
            self.tasks.update(current.id, state=TaskState.FAILED, failure_reason=reason)
            result.tasks_failed += 1
            return

        active = self.agents.count_active_by_type(AgentType.WORKER)
        if active >= self.config.max_concurrent_workers:
            logger.info(
                "Worker limit reached (%d/%d); %s waits",
                active, self.config.max_concurrent_workers, current.id,
            )
            result.workers_skipped_due_to_limit += 1
            return

        worker = self.agents.create(
            type=AgentType.WORKER,
            current_task_id=current.id,
            desired_execution_state=DesiredExecutionState.ACTIVE,
            execution_state=ExecutionState.IDLE,
        )
        logger.info("Created worker %s for %s", worker.id, current.id)
        self._provision_or_discard(
            current,
            worker,
            state=TaskState.IN_PROGRESS,
            assigned_agent_id=worker.id,
            attempts=current.attempts + 1,
        )
        result.workers_created += 1
        result.infrastructure_created += 1

    def _provision_or_discard(self, task: Task, agent: Agent, **task_fields) -> None:
        """Provision a new agent's worktree, then apply ``task_fields`` to the task.

        If either step fails the agent is deleted, so no agent is left behind
        without a task pointing at it.
        """
        try:
            provision_task_infrastructure(
                task, agent.id, self.tasks, self.agents, self.projects, self.git_client_factory
            )
            if task_fields:
                self.tasks.update(task.id, **task_fields)
        except Exception:
            logger.warning("Setting up %s failed; removing agent %s", task.id, agent.id)
            self.agents.delete(agent.id)
            raise

    def _repair_infrastructure(self, task: Task) -> None:
        if task.is_top_level:
            supervisor = self.agents.find_supervisor_by_top_level_task_id(task.id)
            agent_id = supervisor.id if supervisor else None
        else:
            agent_id = task.assigned_agent_id
        provision_task_infrastructure(
            task, agent_id, self.tasks, self.agents, self.projects, self.git_client_factory
        )

    def _reconcile_agent_state(self, agent: Agent) -> None:
        target = next_execution_state(agent)
        if target is not None:
            logger.info(
                "Agent %s: %s -> %s (desired %s)",
                agent.id,
                agent.execution_state.value,
                target.value,
                agent.desired_execution_state.value,
            )
            self.agents.update(agent.id, execution_state=target)
        self.agents.mark_reconciled(agent.id)
