"""Persist the global dispatcher state and guard it with a PID-verified lock."""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

from .constants import INBOX_DIR, LOCK_FILE, LOCK_GUARD_FILE, SESSIONS_DIR, STATE_DIR_NAME, STATE_FILE, STATE_MUTEX_FILE
from .errors import LockHeldError, StateIOError
from .io_utils import FileLock, _atomic_write_json, _load_data_with_error
from .models import GlobalState
from .utils import _coerce_int, _now_iso, _pid_is_running


@dataclass(frozen=True)
class LockInfo:
    pid: int
    acquired_at: Optional[str] = None


class StateStore:
    """Durable mapping of plan id to plan state under `<project>/.dispatcher/`.

    Only the process holding the lock file runs dispatcher cycles. Every
    load/modify/save sequence, whether from a cycle or from a direct operator
    command, additionally runs under the state mutex (see `transaction`).
    """

    def __init__(self, project_dir: Path, state_dir: Optional[Path] = None) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.state_dir = state_dir or self.project_dir / STATE_DIR_NAME
        self.state_path = self.state_dir / STATE_FILE
        self.lock_path = self.state_dir / LOCK_FILE
        self.lock_guard_path = self.state_dir / LOCK_GUARD_FILE
        self.mutex_path = self.state_dir / STATE_MUTEX_FILE
        self.inbox_dir = self.state_dir / INBOX_DIR
        self.sessions_dir = self.state_dir / SESSIONS_DIR

    def load_state(self) -> GlobalState:
        """Load the snapshot, returning an empty state on cold start.

        Raises:
            StateIOError: If a snapshot exists but cannot be read or parsed.
        """
        data, err = _load_data_with_error(self.state_path, {})
        if err:
            raise StateIOError(f"Unable to load state snapshot: {err}")
        return GlobalState.from_dict(data)

    def save_state(self, state: GlobalState) -> None:
        try:
            _atomic_write_json(self.state_path, state.to_dict())
        except OSError as exc:
            raise StateIOError(f"Unable to save state snapshot {self.state_path}: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[GlobalState]:
        """Load the state, yield it for mutation and save it on clean exit."""
        with FileLock(self.mutex_path):
            state = self.load_state()
            yield state
            self.save_state(state)

    def read_lock(self) -> Optional[LockInfo]:
        if not self.lock_path.exists():
            return None
        try:
            raw = json.loads(self.lock_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(raw, dict):
            return None
        pid = _coerce_int(raw.get("pid"), 0)
        if pid <= 0:
            return None
        return LockInfo(pid=pid, acquired_at=raw.get("acquired_at") or raw.get("started_at"))

    def acquire_lock(self) -> LockInfo:
        """Claim the singleton dispatcher lock for the current process.

        The check and the write happen under the lock guard mutex, so two
        dispatchers starting together cannot both claim it. A lock whose
        holder PID is no longer alive (or that cannot be parsed) is reclaimed
        by overwriting it.

        Raises:
            LockHeldError: If a live process holds the lock.
            StateIOError: If the lock file cannot be written.
        """
        try:
            with FileLock(self.lock_guard_path):
                current = self.read_lock()
                if current and _pid_is_running(current.pid):
                    raise LockHeldError(current.pid)
                if current:
                    logger.warning("Reclaiming stale dispatcher lock held by dead PID {}", current.pid)
                info = LockInfo(pid=os.getpid(), acquired_at=_now_iso())
                _atomic_write_json(self.lock_path, {"pid": info.pid, "acquired_at": info.acquired_at})
        except OSError as exc:
            raise StateIOError(f"Unable to write lock file {self.lock_path}: {exc}") from exc
        return info

    def release_lock(self) -> None:
        """Remove the lock file if this process holds it."""
        if not self.lock_path.exists():
            return
        try:
            with FileLock(self.lock_guard_path):
                current = self.read_lock()
                if current is None or current.pid != os.getpid():
                    return
                self.lock_path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StateIOError(f"Unable to remove lock file {self.lock_path}: {exc}") from exc

    def inbox_path(self, plan_id: str) -> Path:
        exact = self.inbox_dir / f"{plan_id}.md"
        if exact.exists() or not self.inbox_dir.exists():
            return exact
        for candidate in sorted(self.inbox_dir.glob(f"*-{plan_id}.md")):
            return candidate
        return exact

    def list_inbox_plan_ids(self) -> list[str]:
        if not self.inbox_dir.exists():
            return []
        return sorted(path.stem for path in self.inbox_dir.glob("*.md"))

    def delete_inbox_plan(self, plan_id: str) -> None:
        path = self.inbox_path(plan_id)
        if path.exists():
            path.unlink()
