"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".work_reconciler" / "wr.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    slack_bot_token: str | None = None
    worktree_dir: str = ".worktrees"
    max_concurrent_supervisors: int = 5
    max_concurrent_workers: int = 10
    agent_heartbeat_threshold_minutes: int = 5
    max_worker_attempts: int = 3
    reconcile_interval: float = 30.0

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("WR_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("WR_REPO_PATH"):
            config.repo_path = Path(repo)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if wt_dir := os.environ.get("WR_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if supervisors := os.environ.get("WR_MAX_CONCURRENT_SUPERVISORS"):
            config.max_concurrent_supervisors = int(supervisors)

        if workers := os.environ.get("WR_MAX_CONCURRENT_WORKERS"):
            config.max_concurrent_workers = int(workers)

        if threshold := os.environ.get("WR_AGENT_HEARTBEAT_THRESHOLD_MINUTES"):
            config.agent_heartbeat_threshold_minutes = int(threshold)

        if attempts := os.environ.get("WR_MAX_WORKER_ATTEMPTS"):
            config.max_worker_attempts = int(attempts)

        if interval := os.environ.get("WR_RECONCILE_INTERVAL"):
            config.reconcile_interval = float(interval)

        return config


def get_config() -> Config:
    return Config.from_env()
