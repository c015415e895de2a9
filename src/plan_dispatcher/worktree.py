"""Create and manage the isolated git working tree each plan runs in."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Protocol

from loguru import logger

from .constants import WORKTREE_LOCAL_DIR
from .errors import ProviderError
from .git_utils import _git, _git_branch_exists, _git_error, _git_has_changes, _git_has_remote, _git_is_repo


def ensure_local_dir(worktree: Path) -> Path:
    """Create the per-worktree dispatcher directory and keep it out of commits."""
    local_dir = Path(worktree) / WORKTREE_LOCAL_DIR
    local_dir.mkdir(parents=True, exist_ok=True)
    ignore_path = local_dir / ".gitignore"
    if not ignore_path.exists():
        ignore_path.write_text("*\n", encoding="utf-8")
    return local_dir


class WorktreeProvider(Protocol):
    def create_worktree(self, repo_root: Path, worktrees_root: Path, branch: str, base_branch: str) -> Path:
        ...

    def copy_file(self, src: Path, worktree: Path, rel_dest: str) -> Path:
        ...

    def commit_all(self, worktree: Path, message: str) -> bool:
        ...


class GitWorktreeProvider:
    """`git worktree` backed provider.

    New branches start from `<remote>/<base_branch>` when the remote exists
    (after fetching it), otherwise from the local base branch.
    """

    def __init__(self, remote: str = "origin") -> None:
        self.remote = remote

    def _base_ref(self, repo_root: Path, base_branch: str) -> str:
        if not _git_has_remote(repo_root, self.remote):
            return base_branch
        fetched = _git(["fetch", self.remote, base_branch], repo_root)
        if fetched.returncode != 0:
            logger.warning("git fetch {} {} failed, using local branch: {}", self.remote, base_branch, _git_error(fetched))
            return base_branch
        return f"{self.remote}/{base_branch}"

    def create_worktree(self, repo_root: Path, worktrees_root: Path, branch: str, base_branch: str) -> Path:
        if not _git_is_repo(repo_root):
            raise ProviderError(f"Not a git repository: {repo_root}")
        worktrees_root.mkdir(parents=True, exist_ok=True)
        worktree = worktrees_root / branch
        if worktree.exists():
            raise ProviderError(f"Worktree path already exists: {worktree}")
        if _git_branch_exists(repo_root, branch):
            args = ["worktree", "add", str(worktree), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(worktree), self._base_ref(repo_root, base_branch)]
        result = _git(args, repo_root)
        if result.returncode != 0:
            raise ProviderError(f"git worktree add failed for {branch}: {_git_error(result)}")
        logger.info("Created worktree {} on branch {}", worktree, branch)
        return worktree

    def copy_file(self, src: Path, worktree: Path, rel_dest: str) -> Path:
        dest = Path(worktree) / rel_dest
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dest)
        except OSError as exc:
            raise ProviderError(f"Unable to copy {src} into {dest}: {exc}") from exc
        return dest

    def commit_all(self, worktree: Path, message: str) -> bool:
        """Stage everything and commit. Returns False when there was nothing to commit."""
        added = _git(["add", "-A"], worktree)
        if added.returncode != 0:
            raise ProviderError(f"git add failed in {worktree}: {_git_error(added)}")
        if not _git_has_changes(worktree):
            return False
        committed = _git(["commit", "-m", message], worktree)
        if committed.returncode != 0:
            raise ProviderError(f"git commit failed in {worktree}: {_git_error(committed)}")
        return True
