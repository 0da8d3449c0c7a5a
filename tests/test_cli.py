"""Tests for the CLI."""

import json
import os
import subprocess
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from work_reconciler.cli import main
from work_reconciler.core import agents as agents_mod
from work_reconciler.db.engine import get_db


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        repo_path = Path(tmp) / "repo"
        repo_path.mkdir()

        # Init git repo
        subprocess.run(["git", "init"], cwd=repo_path, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=repo_path, capture_output=True, check=True)
        (repo_path / "README.md").write_text("# Test")
        subprocess.run(["git", "add", "."], cwd=repo_path, capture_output=True, check=True)
        subprocess.run(
            ["git", "commit", "-m", "init"],
            cwd=repo_path,
            capture_output=True,
            check=True,
            env={**os.environ, "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
                 "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com"},
        )

        env = {
            "WR_DB_PATH": str(db_path),
            "WR_REPO_PATH": str(repo_path),
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner(), str(repo_path), db_path

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _setup_tasks(runner, repo_path):
    runner.invoke(main, ["init", "proj", "--repo-path", repo_path])
    runner.invoke(main, ["task", "add", "Epic", "--project", "proj"])
    runner.invoke(main, ["task", "add", "Login form", "--project", "proj", "--parent", "epic"])


class TestCLI:
    def test_help(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Work Reconciler" in result.output

    def test_init_and_task_flow(self, cli_env):
        runner, repo_path, _ = cli_env

        result = runner.invoke(main, ["init", "my-project", "--repo-path", repo_path])
        assert result.exit_code == 0
        assert "my-project" in result.output

        result = runner.invoke(main, ["init", "my-project", "--repo-path", repo_path])
        assert result.exit_code == 1
        assert "already exists" in result.output

        result = runner.invoke(main, ["task", "add", "Test task", "--project", "my-project"])
        assert result.exit_code == 0
        assert "test-task" in result.output
        assert "PLANNING" in result.output

        result = runner.invoke(main, ["task", "list", "--project", "my-project"])
        assert result.exit_code == 0
        assert "test-task" in result.output

        result = runner.invoke(main, ["task", "show", "test-task"])
        assert result.exit_code == 0
        assert "Test task" in result.output
        assert "Attempts: 0" in result.output

    def test_task_add_default_project(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "add", "Quick fix"])
        assert result.exit_code == 0
        result = runner.invoke(main, ["task", "list", "--json"])
        assert json.loads(result.output)[0]["project"] == "default"

    def test_task_add_missing_parent(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "add", "Orphan", "--parent", "ghost"])
        assert result.exit_code == 1
        assert "Parent task not found" in result.output

    def test_task_show_missing(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "show", "ghost"])
        assert result.exit_code == 1
        assert "Task not found" in result.output

    def test_dependencies(self, cli_env):
        runner, repo_path, _ = cli_env
        _setup_tasks(runner, repo_path)
        runner.invoke(main, ["task", "add", "Tests", "--project", "proj", "--parent", "epic"])

        result = runner.invoke(main, ["task", "add-dep", "tests", "login-form"])
        assert result.exit_code == 0
        assert "login-form" in result.output

        result = runner.invoke(main, ["task", "remove-dep", "tests", "login-form"])
        assert result.exit_code == 0
        assert "No remaining dependencies" in result.output

    def test_cyclic_dependency_rejected(self, cli_env):
        runner, repo_path, _ = cli_env
        _setup_tasks(runner, repo_path)
        runner.invoke(main, ["task", "add", "Tests", "--project", "proj", "--parent", "epic"])
        runner.invoke(main, ["task", "add-dep", "tests", "login-form"])

        result = runner.invoke(main, ["task", "add-dep", "login-form", "tests"])
        assert result.exit_code == 1
        assert "cycle" in result.output

    def test_init_with_worktree_path(self, cli_env):
        runner, repo_path, db_path = cli_env
        wt_path = db_path.parent / "worktrees"
        result = runner.invoke(
            main, ["init", "proj", "--repo-path", repo_path, "--worktree-path", str(wt_path)]
        )
        assert result.exit_code == 0
        assert f"Worktrees: {wt_path}" in result.output


class TestReconcileCommands:
    def test_reconcile_json(self, cli_env):
        runner, repo_path, _ = cli_env
        _setup_tasks(runner, repo_path)

        result = runner.invoke(main, ["reconcile", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["success"] is True
        assert data["supervisors_created"] == 1
        assert data["workers_created"] == 1
        assert data["errors"] == []

        result = runner.invoke(main, ["task", "show", "login-form"])
        assert "IN_PROGRESS" in result.output
        assert "Branch: task/login-form" in result.output

    def test_reconcile_summary(self, cli_env):
        runner, repo_path, _ = cli_env
        _setup_tasks(runner, repo_path)
        result = runner.invoke(main, ["reconcile"])
        assert result.exit_code == 0
        assert "Reconciliation succeeded" in result.output
        assert "Supervisors created: 1" in result.output

    def test_reconcile_single_task(self, cli_env):
        runner, repo_path, _ = cli_env
        _setup_tasks(runner, repo_path)

        result = runner.invoke(main, ["reconcile", "task", "epic"])
        assert result.exit_code == 0
        assert "Reconciled task epic" in result.output

        result = runner.invoke(main, ["agent", "list", "--type", "supervisor", "--json"])
        agents = json.loads(result.output)
        assert len(agents) == 1
        assert agents[0]["task"] == "epic"
        assert agents[0]["execution_state"] == "IDLE"

    def test_reconcile_task_failure_reported(self, cli_env):
        runner, repo_path, _ = cli_env
        _setup_tasks(runner, repo_path)

        # The epic has no branch yet, so the leaf cannot be provisioned
        result = runner.invoke(main, ["reconcile", "task", "login-form"])
        assert result.exit_code == 0
        assert "PENDING" in result.output
        assert "no branch yet" in result.output

    def test_reconcile_missing_entities(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["reconcile", "task", "ghost"])
        assert result.exit_code == 1
        assert "Task not found" in result.output
        result = runner.invoke(main, ["reconcile", "agent", "ghost"])
        assert result.exit_code == 1
        assert "Agent not found" in result.output


class TestAgentCommands:
    def test_list_empty(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["agent", "list"])
        assert result.exit_code == 0
        assert "No agents found" in result.output

    def test_desire_then_reconcile_agent(self, cli_env):
        runner, repo_path, db_path = cli_env
        _setup_tasks(runner, repo_path)
        runner.invoke(main, ["reconcile"])
        with get_db(db_path) as db:
            worker = agents_mod.list_agents(db, type="WORKER")[0]

        result = runner.invoke(main, ["agent", "desire", worker.id, "paused"])
        assert result.exit_code == 0
        assert "desired state: PAUSED" in result.output

        # An idle agent cannot be paused; it stays idle
        result = runner.invoke(main, ["reconcile", "agent", worker.id])
        assert result.exit_code == 0
        assert "IDLE (desired PAUSED)" in result.output

        runner.invoke(main, ["agent", "desire", worker.id, "active"])
        result = runner.invoke(main, ["reconcile", "agent", worker.id])
        assert "ACTIVE (desired ACTIVE)" in result.output

        result = runner.invoke(main, ["agent", "show", worker.id])
        assert result.exit_code == 0
        assert "Worktree:" in result.output

    def test_desire_missing_agent(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["agent", "desire", "ghost", "idle"])
        assert result.exit_code == 1
        assert "Agent not found" in result.output
