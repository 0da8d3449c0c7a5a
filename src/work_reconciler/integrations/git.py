"""Git subprocess wrappers and the worktree client used for task infrastructure."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from work_reconciler.db.models import Project

logger = logging.getLogger(__name__)

WORKTREE_PREFIX = "task-"
BRANCH_PREFIX = "task/"


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class WorktreeResult:
    worktree_path: str
    branch_name: str


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_branch)
    return run_git(args, cwd=repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def branch_for_worktree(name: str) -> str:
    """``task-abc`` lives on branch ``task/abc``."""
    if name.startswith(WORKTREE_PREFIX):
        name = name[len(WORKTREE_PREFIX):]
    return f"{BRANCH_PREFIX}{name}"


class GitClient:
    """Creates and locates worktrees for one repository."""

    def __init__(
        self,
        repo_path: str | Path,
        worktree_base_path: str | Path | None = None,
        worktree_dir: str = ".worktrees",
    ):
        self.repo_path = Path(repo_path)
        if worktree_base_path is None:
            worktree_base_path = self.repo_path / worktree_dir
        self.worktree_base_path = Path(worktree_base_path)

    @classmethod
    def for_project(cls, project: Project, worktree_dir: str = ".worktrees") -> "GitClient":
        """Client for a project. ``worktree_dir`` applies when the project sets no base path."""
        return cls(project.repo_path, project.worktree_base_path, worktree_dir)

    def get_worktree_path(self, name: str) -> str:
        return str(self.worktree_base_path / name)

    def create_worktree(self, name: str, base_branch: str) -> WorktreeResult:
        """Create worktree ``name`` on a fresh branch cut from ``base_branch``.

        Calling this again for an existing worktree returns it unchanged, so
        provisioning can be retried after a partial failure.
        """
        wt_path = Path(self.get_worktree_path(name))
        if wt_path.exists():
            branch = get_current_branch(wt_path) or branch_for_worktree(name)
            logger.debug("Worktree %s already exists on %s", wt_path, branch)
            return WorktreeResult(worktree_path=str(wt_path), branch_name=branch)

        branch = branch_for_worktree(name)
        wt_path.parent.mkdir(parents=True, exist_ok=True)
        create_branch = not branch_exists(self.repo_path, branch)
        worktree_add(self.repo_path, wt_path, branch, base_branch, create_branch=create_branch)
        logger.info("Created worktree %s on %s (base %s)", wt_path, branch, base_branch)
        return WorktreeResult(worktree_path=str(wt_path), branch_name=branch)
