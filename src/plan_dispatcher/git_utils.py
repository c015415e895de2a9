"""Provide small git helpers used by the worktree provider."""

from __future__ import annotations

import re
import subprocess
import uuid
from pathlib import Path


def _git(args: list[str], cwd: Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )


def _git_error(result: subprocess.CompletedProcess) -> str:
    return (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"


def _git_is_repo(project_dir: Path) -> bool:
    result = _git(["rev-parse", "--is-inside-work-tree"], project_dir)
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    return _git(["show-ref", "--verify", f"refs/heads/{branch}"], project_dir).returncode == 0


def _git_has_remote(project_dir: Path, remote: str) -> bool:
    result = _git(["remote"], project_dir)
    return result.returncode == 0 and remote in result.stdout.split()


def _git_has_changes(project_dir: Path) -> bool:
    result = _git(["status", "--porcelain"], project_dir)
    return result.returncode == 0 and bool(result.stdout.strip())


def _branch_name_for(plan_id: str) -> str:
    safe = re.sub(r"[^a-z0-9._/-]+", "-", plan_id.lower()).strip("-") or "plan"
    return f"{safe}-{uuid.uuid4().hex[:5]}"
