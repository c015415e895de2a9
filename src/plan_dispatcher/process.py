"""Spawn detached agent processes and track them by PID."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Optional

from .errors import SpawnError
from .utils import _pid_is_running


def spawn_detached(
    command: list[str],
    *,
    cwd: Optional[Path] = None,
    log_path: Optional[Path] = None,
) -> int:
    """Start `command` in its own session and return its PID without waiting.

    Output goes to `log_path` (appended) when given, otherwise it is discarded.

    Raises:
        SpawnError: If the process cannot be started.
    """
    handle = None
    try:
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(log_path, "a", encoding="utf-8")
        process = subprocess.Popen(
            command,
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            stdout=handle if handle else subprocess.DEVNULL,
            stderr=subprocess.STDOUT if handle else subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        raise SpawnError(f"Failed to spawn {command[0] if command else '<empty>'}: {exc}") from exc
    finally:
        if handle:
            handle.close()
    return process.pid


def _reap(pid: int) -> bool:
    """Collect a finished child so it does not linger as a zombie.

    Returns True if `pid` was our child and has exited.
    """
    try:
        reaped_pid, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        return False
    except OSError:
        return False
    return reaped_pid == pid


def is_process_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    if _reap(pid):
        return False
    return _pid_is_running(pid)


def terminate_process(pid: Optional[int], sig: int = signal.SIGTERM) -> bool:
    """Send `sig` to `pid`. Returns False when the process was already gone."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError:
        return False
    return True


def wait_for_process(pid: int, poll_interval: float = 1.0, timeout: Optional[float] = None) -> bool:
    """Block until `pid` exits. Returns False if `timeout` elapsed first."""
    deadline = time.monotonic() + timeout if timeout is not None else None
    while is_process_alive(pid):
        if deadline is not None and time.monotonic() >= deadline:
            return False
        time.sleep(poll_interval)
    return True
