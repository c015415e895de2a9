"""Capability interface every agent CLI integration implements."""

from __future__ import annotations

import shlex
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from ..errors import SpawnError
from ..models import ExecutionResult
from ..process import spawn_detached
from ..session import SessionRunner, build_wrapped_command, record_exit_code


@dataclass(frozen=True)
class SessionDescriptor:
    """Request to host the invocation in a named detached terminal session."""

    name: str


@dataclass(frozen=True)
class ExecuteRequest:
    working_dir: Path
    prompt: str
    session: Optional[SessionDescriptor] = None
    model: Optional[str] = None
    # Name of the per-run directory holding prompt/log/marker files. Defaults
    # to the session name, or a timestamped name for headless runs.
    run_name: Optional[str] = None
    runner: Optional[SessionRunner] = None


def _default_runner() -> SessionRunner:
    return SessionRunner(Path(tempfile.gettempdir()) / "plan-dispatcher")


class AgentAdapter(ABC):
    name: str = ""

    @abstractmethod
    def execute(self, request: ExecuteRequest) -> ExecutionResult:
        """Start a headless run; returns a session or pid to poll, or an exit code."""

    @abstractmethod
    def interactive(self, working_dir: Path, prompt: Optional[str] = None, model: Optional[str] = None) -> None:
        """Run the agent attached to the operator's terminal until it exits."""


class CliAgentAdapter(AgentAdapter):
    """Adapter for agents driven by a command-line binary.

    Subclasses describe the argument lists; this class owns the execution
    modes. The prompt is always read from a file (`"$(cat <file>)"`) to avoid
    argument-length limits and quoting hazards.
    """

    binary: str = ""

    @abstractmethod
    def headless_args(self, prompt_expr: str, model: Optional[str]) -> list[str]:
        """Arguments for a non-interactive run. `prompt_expr` is already shell-quoted."""

    def interactive_args(self, prompt: Optional[str], model: Optional[str]) -> list[str]:
        args: list[str] = []
        if model:
            args += ["--model", model]
        if prompt:
            args.append(prompt)
        return args

    def command_line(self, prompt_file: Path, model: Optional[str]) -> str:
        prompt_expr = f'"$(cat {shlex.quote(str(prompt_file))})"'
        return " ".join([self.binary, *self.headless_args(prompt_expr, model)])

    def execute(self, request: ExecuteRequest) -> ExecutionResult:
        runner = request.runner or _default_runner()
        if request.session is not None:
            run_name = request.run_name or request.session.name
        else:
            run_name = request.run_name or f"{self.name}-{int(time.time() * 1000)}"
        paths = runner.prepare_log_files(run_name, request.prompt)
        command = self.command_line(paths.prompt_file, request.model)

        if request.session is not None:
            runner.start_session(request.session.name, build_wrapped_command(command, paths), request.working_dir)
            return ExecutionResult(session=request.session.name, log_path=str(paths.log_file))

        pid = spawn_detached(
            ["bash", "-c", f"{command}; {record_exit_code('$?', paths.exit_code_file)}"],
            cwd=request.working_dir,
            log_path=paths.log_file,
        )
        return ExecutionResult(pid=pid, log_path=str(paths.log_file))

    def interactive(self, working_dir: Path, prompt: Optional[str] = None, model: Optional[str] = None) -> None:
        args = [self.binary, *self.interactive_args(prompt, model)]
        logger.debug("Launching interactive {} in {}", self.name, working_dir)
        try:
            subprocess.run(args, cwd=str(working_dir), check=False)
        except OSError as exc:
            raise SpawnError(f"Failed to launch {self.binary}: {exc}") from exc
