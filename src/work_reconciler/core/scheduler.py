"""Periodic trigger that runs reconciliation cycles in a background thread."""

import logging
import sqlite3
import threading
from pathlib import Path

from work_reconciler.config import Config
from work_reconciler.core.agents import AgentAccessor, get_agent, list_agents
from work_reconciler.core.projects import ProjectAccessor, get_project
from work_reconciler.core.reconciler import Reconciler
from work_reconciler.core.registry import InMemoryProcessRegistry, ProcessRegistry
from work_reconciler.core.results import ReconciliationResult
from work_reconciler.core.tasks import TaskAccessor, get_task
from work_reconciler.db.engine import init_db
from work_reconciler.integrations.git import GitClient

logger = logging.getLogger(__name__)


def build_reconciler(
    db: sqlite3.Connection, config: Config, registry: ProcessRegistry | None = None
) -> Reconciler:
    """Wire the SQLite accessors into a reconciler for one connection.

    Without a registry, one is snapshotted from the pids recorded in the database.
    Projects without their own worktree base path use ``config.worktree_dir``
    inside the repository.
    """
    if registry is None:
        registry = InMemoryProcessRegistry.from_recorded_pids(list_agents(db))
    return Reconciler(
        tasks=TaskAccessor(db),
        agents=AgentAccessor(db),
        projects=ProjectAccessor(db),
        registry=registry,
        config=config,
        git_client_factory=lambda project: GitClient.for_project(project, config.worktree_dir),
    )


class ReconcileLoop:
    """Background thread that runs one reconciliation cycle per interval.

    Cycles never overlap: the next one starts only after the previous one
    returned.
    """

    def __init__(
        self,
        db_path: Path,
        config: Config,
        registry: ProcessRegistry | None = None,
        interval: float | None = None,
        slack_token: str | None = None,
    ):
        self.db_path = db_path
        self.config = config
        self.registry = registry
        self.interval = interval if interval is not None else config.reconcile_interval
        self.slack_token = slack_token
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._cycle_lock = threading.Lock()

    def start(self):
        """Start the loop thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="reconcile-loop", daemon=True
        )
        self._thread.start()
        logger.info("Reconcile loop started (every %.1fs)", self.interval)

    def stop(self):
        """Signal the loop thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Reconcile loop stopped")

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self):
        """Main loop."""
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Error in reconcile loop")
            self._stop_event.wait(self.interval)

    def run_once(self) -> ReconciliationResult:
        """Run a single cycle against a fresh connection."""
        with self._cycle_lock:
            db = init_db(self.db_path)
            try:
                result = build_reconciler(db, self.config, self.registry).reconcile_all()
                for error in result.errors:
                    logger.warning(
                        "%s %s failed during %s: %s",
                        error.entity, error.id, error.action, error.error,
                    )
                self._notify_crashes(db, result.crashed_agent_ids)
                return result
            finally:
                db.close()

    def _notify_crashes(self, db: sqlite3.Connection, agent_ids: list[str]):
        """Send a Slack notice per crashed agent (best-effort)."""
        if not self.slack_token or not agent_ids:
            return
        for agent_id in agent_ids:
            try:
                from work_reconciler.integrations.slack import (
                    format_crash_notification,
                    send_message,
                )

                agent = get_agent(db, agent_id)
                if not agent or not agent.current_task_id:
                    continue
                task = get_task(db, agent.current_task_id)
                if not task:
                    continue
                project = get_project(db, task.project_id)
                channel = project.slack_channel if project else None
                if not channel:
                    continue

                blocks = format_crash_notification(agent, task)
                send_message(
                    self.slack_token,
                    channel,
                    f"Agent {agent.id} crashed on task {task.id}",
                    blocks=blocks,
                )
            except Exception:
                logger.exception("Failed to send Slack notification for crashed agent %s", agent_id)
