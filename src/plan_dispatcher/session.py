"""Run agent invocations inside named, detached tmux sessions.

Each session owns a directory named after the session id holding:

- `worker.prompt`: the prompt, so it never has to travel on a command line.
- `worker.log`: combined stdout/stderr, teed from the agent.
- `worker.exitcode`: the agent's integer exit code, written when it finishes.

The marker file is the completion signal shared by the dispatcher's
non-blocking poll and the blocking `wait_for_completion`, so both observe the
same result.
"""

from __future__ import annotations

import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import (
    DEFAULT_MISSING_MARKER_EXIT_CODE,
    DEFAULT_SESSION_WAIT_INTERVAL_SECONDS,
    SESSION_EXIT_CODE_FILE,
    SESSION_LOG_FILE,
    SESSION_PROMPT_FILE,
)
from .errors import SessionCreateError
from .io_utils import _read_text_tail
from .models import ExecutionResult


@dataclass(frozen=True)
class SessionPaths:
    directory: Path
    log_file: Path
    exit_code_file: Path
    prompt_file: Path


def record_exit_code(status_expr: str, exit_code_file: Path) -> str:
    """Shell snippet that writes `status_expr` to the marker in one rename.

    The marker only appears once it holds the full exit code, so a poll never
    reads a half-written file.
    """
    partial = shlex.quote(f"{exit_code_file}.partial")
    return f"echo {status_expr} > {partial} && mv -f {partial} {shlex.quote(str(exit_code_file))}"


def build_wrapped_command(command: str, paths: SessionPaths) -> str:
    """Wrap an agent command line so it tees output and records its exit code."""
    log_file = shlex.quote(str(paths.log_file))
    return f"{command} 2>&1 | tee {log_file}; {record_exit_code('${PIPESTATUS[0]}', paths.exit_code_file)}"


class SessionRunner:
    def __init__(
        self,
        sessions_root: Path,
        *,
        missing_marker_exit_code: int = DEFAULT_MISSING_MARKER_EXIT_CODE,
        tmux_binary: str = "tmux",
    ) -> None:
        self.sessions_root = Path(sessions_root)
        # Exit code reported when a session ended without writing its marker
        # (e.g. the session was killed externally). 0 treats that as success.
        self.missing_marker_exit_code = missing_marker_exit_code
        self.tmux_binary = tmux_binary

    def paths(self, session_id: str) -> SessionPaths:
        directory = self.sessions_root / session_id
        return SessionPaths(
            directory=directory,
            log_file=directory / SESSION_LOG_FILE,
            exit_code_file=directory / SESSION_EXIT_CODE_FILE,
            prompt_file=directory / SESSION_PROMPT_FILE,
        )

    def prepare_log_files(self, session_id: str, prompt: str) -> SessionPaths:
        """Clear any previous run's log/marker under `session_id` and persist the prompt.

        Raises:
            SessionCreateError: If the session directory cannot be prepared.
        """
        paths = self.paths(session_id)
        try:
            paths.directory.mkdir(parents=True, exist_ok=True)
            for stale in (paths.log_file, paths.exit_code_file):
                stale.unlink(missing_ok=True)
            paths.prompt_file.write_text(prompt, encoding="utf-8")
        except OSError as exc:
            raise SessionCreateError(f"Unable to prepare session directory {paths.directory}: {exc}") from exc
        return paths

    def _tmux(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.tmux_binary, *args],
            capture_output=True,
            text=True,
            check=False,
        )

    def has_tmux(self) -> bool:
        if shutil.which(self.tmux_binary) is None:
            return False
        try:
            return self._tmux("-V").returncode == 0
        except OSError:
            return False

    def has_session(self, session_id: str) -> bool:
        try:
            return self._tmux("has-session", "-t", session_id).returncode == 0
        except OSError:
            return False

    def kill_session(self, session_id: str) -> bool:
        try:
            return self._tmux("kill-session", "-t", session_id).returncode == 0
        except OSError:
            return False

    def start_session(self, session_id: str, command: str, cwd: Path) -> None:
        """Start `command` (run by bash) in a new detached session.

        A leftover session with the same name is killed first.

        Raises:
            SessionCreateError: If tmux is unavailable or refuses to create the session.
        """
        self.kill_session(session_id)
        try:
            result = self._tmux(
                "new-session", "-d", "-s", session_id, "-c", str(cwd), "bash", "-c", command
            )
        except OSError as exc:
            raise SessionCreateError(f"Unable to start tmux session {session_id}: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
            raise SessionCreateError(f"Unable to start tmux session {session_id}: {detail}")
        logger.debug("Started tmux session {} in {}", session_id, cwd)

    def read_execution_result(self, session_id: str) -> ExecutionResult:
        """Read the exit code marker; a missing or unreadable marker yields the configured default."""
        paths = self.paths(session_id)
        exit_code = self.missing_marker_exit_code
        try:
            raw = paths.exit_code_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            raw = ""
        except OSError as exc:
            logger.warning("Unable to read exit code for session {}: {}", session_id, exc)
            raw = ""
        if raw:
            try:
                exit_code = int(raw.splitlines()[-1].strip())
            except ValueError:
                logger.warning("Ignoring unparseable exit code {!r} for session {}", raw, session_id)
        return ExecutionResult(exit_code=exit_code, session=session_id, log_path=str(paths.log_file))

    def poll_session(self, session_id: str) -> Optional[ExecutionResult]:
        """Non-blocking completion check.

        Returns the result once the marker exists or the session has vanished,
        otherwise None.
        """
        if self.paths(session_id).exit_code_file.exists():
            return self.read_execution_result(session_id)
        if self.has_session(session_id):
            return None
        # The session may have exited between the two checks.
        if not self.paths(session_id).exit_code_file.exists():
            logger.warning("Session {} ended without writing an exit code", session_id)
        return self.read_execution_result(session_id)

    def wait_for_completion(
        self,
        session_id: str,
        interval: float = DEFAULT_SESSION_WAIT_INTERVAL_SECONDS,
        timeout: Optional[float] = None,
    ) -> Optional[ExecutionResult]:
        """Block until `poll_session` reports completion, or return None on timeout."""
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            result = self.poll_session(session_id)
            if result is not None:
                return result
            if deadline is not None and time.monotonic() >= deadline:
                return None
            time.sleep(interval)

    def attach_read_only(self, session_id: str) -> int:
        """Attach the operator's terminal to the session without granting input."""
        return subprocess.call([self.tmux_binary, "attach-session", "-r", "-t", session_id])

    def read_log_tail(self, session_id: str, max_chars: int = 4000) -> str:
        return _read_text_tail(self.paths(session_id).log_file, max_chars=max_chars)


def run_name_for(prefix: str, plan_id: str, triage: bool = False) -> str:
    """Session/run directory name for a plan's worker or triage invocation."""
    return f"{prefix}-triage-{plan_id}" if triage else f"{prefix}-{plan_id}"
