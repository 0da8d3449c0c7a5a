"""CLI entry point for the work reconciler."""

import json
import logging
import sys
import time

import click

from work_reconciler.config import get_config
from work_reconciler.core import agents as agents_mod
from work_reconciler.core import projects as projects_mod
from work_reconciler.core import tasks as tasks_mod
from work_reconciler.core.scheduler import ReconcileLoop, build_reconciler
from work_reconciler.db.engine import get_db
from work_reconciler.db.models import AgentType, DesiredExecutionState, ExecutionState, TaskState


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
def main():
    """wr - Work Reconciler CLI"""
    pass


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--slack-channel", default=None, help="Slack channel for crash notices")
@click.option(
    "--worktree-path", default=None,
    help="Directory for task worktrees (default: <repo>/$WR_WORKTREE_DIR)",
)
def init_project(project_name, repo_path, branch, slack_channel, worktree_path):
    """Initialize a new project."""
    import os

    repo_path = os.path.abspath(repo_path)
    project_id = tasks_mod.slugify(project_name)

    with _get_db() as db:
        if projects_mod.get_project(db, project_id):
            click.echo(f"Project already exists: {project_id}", err=True)
            sys.exit(1)
        project = projects_mod.create_project(
            db, project_id, project_name, repo_path, branch, slack_channel,
            os.path.abspath(worktree_path) if worktree_path else None,
        )
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")
        if project.worktree_base_path:
            click.echo(f"  Worktrees: {project.worktree_base_path}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--parent", default=None, help="Parent task ID (creates a leaf task)")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
def task_add(title, project, description, parent, depends_on):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None

    config = get_config()
    with _get_db() as db:
        if project == "default":
            projects_mod.ensure_default_project(db, str(config.repo_path))
        elif not projects_mod.get_project(db, project):
            click.echo(f"Project not found: {project}", err=True)
            sys.exit(1)
        try:
            task = tasks_mod.create_task(
                db, title, project, description, parent_id=parent, depends_on=deps
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  State: {task.state.value}")
        if task.parent_id:
            click.echo(f"  Parent: {task.parent_id}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@click.option("--project", default="default", help="Project ID")
@click.option(
    "--state",
    default=None,
    type=click.Choice([s.value for s in TaskState], case_sensitive=False),
    help="Filter by state",
)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, state, json_output):
    """List top-level tasks and their leaf tasks."""
    state = state.upper() if state else None
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, state=state)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            click.echo(f"  {_task_line(task)}")
            for sub in tasks_mod.list_tasks(db, project, parent_id=task.id):
                click.echo(f"    {_task_line(sub)}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  State: {task.state.value}")
        click.echo(f"  Project: {task.project_id}")
        if task.parent_id:
            click.echo(f"  Parent: {task.parent_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assigned_agent_id:
            click.echo(f"  Agent: {task.assigned_agent_id}")
        if task.branch_name:
            click.echo(f"  Branch: {task.branch_name}")
        click.echo(f"  Attempts: {task.attempts}")
        if task.failure_reason:
            click.echo(f"  Failure: {task.failure_reason}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        if task.reconcile_failures:
            last = task.reconcile_failures[-1]
            click.echo(f"  Last reconcile failure: [{last['action']}] {last['error']}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo(f"  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_add_dep(task_id, depends_on_id):
    """Add a dependency to a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, task_id, depends_on_id)
            if not task:
                click.echo(f"Task not found: {task_id}", err=True)
                sys.exit(1)
            click.echo(f"Added dependency: {task_id} now depends on {depends_on_id}")
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency from a task."""
    with _get_db() as db:
        task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Removed dependency: {task_id} no longer depends on {depends_on_id}")
        if task.depends_on:
            click.echo(f"  Remaining deps: {', '.join(task.depends_on)}")
        else:
            click.echo(f"  No remaining dependencies")


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Inspect agents and set their desired state."""
    pass


@agent_group.command("list")
@click.option(
    "--type", "agent_type", default=None,
    type=click.Choice([t.value for t in AgentType], case_sensitive=False),
    help="Filter by agent type",
)
@click.option(
    "--state", default=None,
    type=click.Choice([s.value for s in ExecutionState], case_sensitive=False),
    help="Filter by actual execution state",
)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_list(agent_type, state, json_output):
    """List agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(
            db,
            type=agent_type.upper() if agent_type else None,
            execution_state=state.upper() if state else None,
        )

        if json_output:
            click.echo(json.dumps([_agent_dict(a) for a in agents], indent=2))
            return

        if not agents:
            click.echo("No agents found.")
            return

        for agent in agents:
            click.echo(
                f"  {agent.id} [{agent.type.value}] "
                f"{agent.execution_state.value} (desired {agent.desired_execution_state.value})"
                f" task={agent.current_task_id}"
            )


@agent_group.command("show")
@click.argument("agent_id")
def agent_show(agent_id):
    """Show agent details."""
    with _get_db() as db:
        agent = agents_mod.get_agent(db, agent_id)
        if not agent:
            click.echo(f"Agent not found: {agent_id}", err=True)
            sys.exit(1)

        click.echo(f"Agent: {agent.id}")
        click.echo(f"  Type: {agent.type.value}")
        click.echo(f"  Actual: {agent.execution_state.value}")
        click.echo(f"  Desired: {agent.desired_execution_state.value}")
        click.echo(f"  Task: {agent.current_task_id}")
        if agent.worktree_path:
            click.echo(f"  Worktree: {agent.worktree_path}")
        if agent.process_pid:
            status = agent.process_status.value if agent.process_status else "unknown"
            click.echo(f"  Process: PID {agent.process_pid} ({status})")
        if agent.last_heartbeat:
            click.echo(f"  Last heartbeat: {agent.last_heartbeat}")
        if agent.last_reconciled_at:
            click.echo(f"  Last reconciled: {agent.last_reconciled_at}")
        for failure in agent.reconcile_failures:
            click.echo(f"  Failure [{failure['action']}] {failure['at']}: {failure['error']}")


@agent_group.command("desire")
@click.argument("agent_id")
@click.argument(
    "state", type=click.Choice([s.value for s in DesiredExecutionState], case_sensitive=False)
)
def agent_desire(agent_id, state):
    """Set an agent's desired execution state.

    The actual state follows on the next reconciliation.
    """
    with _get_db() as db:
        agent = agents_mod.update_agent(
            db, agent_id, desired_execution_state=DesiredExecutionState(state.upper())
        )
        if not agent:
            click.echo(f"Agent not found: {agent_id}", err=True)
            sys.exit(1)
        click.echo(f"Agent {agent.id} desired state: {agent.desired_execution_state.value}")
        click.echo(f"  Actual: {agent.execution_state.value}")


# ── Reconciliation Commands ──────────────────────────────────────────────────


@main.group("reconcile", invoke_without_command=True)
@click.option("--json-output", "--json", is_flag=True, help="Output the raw result as JSON")
@click.pass_context
def reconcile_group(ctx, json_output):
    """Run one full reconciliation cycle."""
    if ctx.invoked_subcommand is not None:
        return

    config = get_config()
    with _get_db() as db:
        result = build_reconciler(db, config).reconcile_all()

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(f"Reconciliation {'succeeded' if result.success else 'finished with errors'}")
        click.echo(f"  Tasks reconciled: {result.tasks_reconciled}")
        click.echo(f"  Agents reconciled: {result.agents_reconciled}")
        click.echo(f"  Supervisors created: {result.supervisors_created}")
        click.echo(f"  Workers created: {result.workers_created}")
        click.echo(f"  Infrastructure created: {result.infrastructure_created}")
        click.echo(f"  Crashes detected: {result.crashes_detected}")
        skipped = result.supervisors_skipped_due_to_limit + result.workers_skipped_due_to_limit
        if skipped:
            click.echo(
                f"  Skipped at limit: {result.supervisors_skipped_due_to_limit} supervisor(s), "
                f"{result.workers_skipped_due_to_limit} worker(s)"
            )
        if result.tasks_blocked:
            click.echo(f"  Tasks blocked: {result.tasks_blocked}")
        if result.tasks_failed:
            click.echo(f"  Tasks failed: {result.tasks_failed}")
        for error in result.errors:
            click.echo(f"  ✗ {error.entity} {error.id} ({error.action}): {error.error}", err=True)

    if not result.success:
        sys.exit(1)


@reconcile_group.command("task")
@click.argument("task_id")
def reconcile_task(task_id):
    """Reconcile a single task now."""
    config = get_config()
    with _get_db() as db:
        if not tasks_mod.get_task(db, task_id):
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        build_reconciler(db, config).reconcile_task(task_id)
        task = tasks_mod.get_task(db, task_id)
        click.echo(f"Reconciled task {task.id}: {task.state.value}")
        if task.assigned_agent_id:
            click.echo(f"  Agent: {task.assigned_agent_id}")
        if task.reconcile_failures:
            last = task.reconcile_failures[-1]
            click.echo(f"  Last failure: {last['error']}", err=True)


@reconcile_group.command("agent")
@click.argument("agent_id")
def reconcile_agent(agent_id):
    """Reconcile a single agent's execution state now."""
    config = get_config()
    with _get_db() as db:
        if not agents_mod.get_agent(db, agent_id):
            click.echo(f"Agent not found: {agent_id}", err=True)
            sys.exit(1)
        build_reconciler(db, config).reconcile_agent(agent_id)
        agent = agents_mod.get_agent(db, agent_id)
        click.echo(
            f"Reconciled agent {agent.id}: {agent.execution_state.value} "
            f"(desired {agent.desired_execution_state.value})"
        )


@main.command("run")
@click.option("--interval", default=None, type=float, help="Seconds between cycles")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def run_loop(interval, verbose):
    """Run reconciliation cycles in the foreground until interrupted."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = get_config()
    loop = ReconcileLoop(
        config.db_path, config, interval=interval, slack_token=config.slack_bot_token
    )
    click.echo(f"Reconciling every {loop.interval:.1f}s against {config.db_path} (Ctrl-C to stop)")
    loop.start()
    try:
        while loop.is_running():
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        loop.stop()


# ── Helpers ──────────────────────────────────────────────────────────────────


def _task_line(task) -> str:
    deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
    agent = f" [agent: {task.assigned_agent_id}]" if task.assigned_agent_id else ""
    return f"{task.id}: {task.title} ({task.state.value}){agent}{deps}"


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "state": task.state.value,
        "project": task.project_id,
        "parent": task.parent_id,
        "description": task.description,
        "agent": task.assigned_agent_id,
        "branch": task.branch_name,
        "attempts": task.attempts,
        "failure_reason": task.failure_reason,
        "depends_on": task.depends_on,
    }


def _agent_dict(agent) -> dict:
    return {
        "id": agent.id,
        "type": agent.type.value,
        "execution_state": agent.execution_state.value,
        "desired_execution_state": agent.desired_execution_state.value,
        "task": agent.current_task_id,
        "worktree": agent.worktree_path,
        "pid": agent.process_pid,
        "process_status": agent.process_status.value if agent.process_status else None,
    }


if __name__ == "__main__":
    main()
