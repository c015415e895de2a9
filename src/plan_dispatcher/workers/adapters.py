"""Concrete agent CLI integrations."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from ..models import ExecutionResult
from .base import AgentAdapter, CliAgentAdapter, ExecuteRequest


class CodexAdapter(CliAgentAdapter):
    """OpenAI Codex CLI."""

    name = "codex"
    binary = "codex"

    def headless_args(self, prompt_expr: str, model: Optional[str]) -> list[str]:
        args = ["exec", "--full-auto"]
        if model:
            args += ["--model", model]
        return args + [prompt_expr]


class ClaudeAdapter(CliAgentAdapter):
    """Claude Code CLI."""

    name = "claude"
    binary = "claude"

    def headless_args(self, prompt_expr: str, model: Optional[str]) -> list[str]:
        args = ["-p", prompt_expr, "--dangerously-skip-permissions"]
        if model:
            args += ["--model", model]
        return args

    def interactive_args(self, prompt: Optional[str], model: Optional[str]) -> list[str]:
        # The TUI takes no initial prompt; the operator types it after launch.
        return ["--model", model] if model else []


class GeminiAdapter(CliAgentAdapter):
    name = "gemini"
    binary = "gemini"

    def headless_args(self, prompt_expr: str, model: Optional[str]) -> list[str]:
        args = ["--prompt", prompt_expr, "--yolo"]
        if model:
            args += ["--model", model]
        return args

    def interactive_args(self, prompt: Optional[str], model: Optional[str]) -> list[str]:
        args: list[str] = []
        if model:
            args += ["--model", model]
        if prompt:
            args += ["-i", prompt]
        return args


class OpencodeAdapter(CliAgentAdapter):
    name = "opencode"
    binary = "opencode"

    def headless_args(self, prompt_expr: str, model: Optional[str]) -> list[str]:
        args = ["run"]
        if model:
            args += ["--model", model]
        return args + [prompt_expr]

    def interactive_args(self, prompt: Optional[str], model: Optional[str]) -> list[str]:
        args: list[str] = []
        if prompt:
            args += ["--prompt", prompt]
        if model:
            args += ["--model", model]
        return args


class AmpAdapter(CliAgentAdapter):
    name = "amp"
    binary = "amp"

    def headless_args(self, prompt_expr: str, model: Optional[str]) -> list[str]:
        return ["--execute", prompt_expr]

    def interactive_args(self, prompt: Optional[str], model: Optional[str]) -> list[str]:
        return ["--execute", prompt] if prompt else []


class ManualAdapter(AgentAdapter):
    """Placeholder for plans worked on by hand in an IDE.

    The dispatcher never launches manual plans; these methods only exist so
    the name resolves like any other integration.
    """

    name = "manual"

    def execute(self, request: ExecuteRequest) -> ExecutionResult:
        logger.warning("Manual agent: execute() called for {}; nothing to run", request.working_dir)
        return ExecutionResult(exit_code=0)

    def interactive(self, working_dir: Path, prompt: Optional[str] = None, model: Optional[str] = None) -> None:
        logger.info("Manual agent: open {} in your editor to work on this plan", working_dir)


BUILTIN_ADAPTERS: tuple[AgentAdapter, ...] = (
    CodexAdapter(),
    ClaudeAdapter(),
    GeminiAdapter(),
    OpencodeAdapter(),
    AmpAdapter(),
    ManualAdapter(),
)
