"""Provide the `plan-dispatcher` command-line entrypoint.

`run` starts the dispatcher loop; every other subcommand is a short-lived
operator command that either edits the snapshot directly or enqueues a
command for the running dispatcher.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from . import operations
from .config import load_dispatcher_config
from .constants import (
    COMMAND_KILL,
    COMMAND_POLL,
    COMMAND_REVIEW,
    COMMAND_STOP,
    EVENTS_FILE,
    LOG_TAIL_LINES,
)
from .control import CommandQueue
from .dispatcher import Dispatcher
from .errors import DispatcherError, PlanNotFoundError
from .models import PlanState, status_text
from .session import SessionRunner, run_name_for
from .state import StateStore
from .utils import _tail_lines
from .workers import get_adapter, get_agent_names, resolve_agent_for_role


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _base_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Log level (default: INFO)",
    )
    return parser


def _plan_parser(description: str) -> argparse.ArgumentParser:
    parser = _base_parser(description)
    parser.add_argument("plan_id", help="Plan id")
    return parser


def _build_run_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Plan Dispatcher - run the dispatcher loop")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument(
        "--no-tmux",
        action="store_true",
        help="Run agents as detached processes instead of tmux sessions",
    )
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Plan Dispatcher - show plan state")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    return parser


def _build_queue_parser() -> argparse.ArgumentParser:
    parser = _plan_parser("Plan Dispatcher - queue an inbox plan for activation")
    parser.add_argument("--agent", type=str, default=None, help="Agent to run this plan with")
    return parser


def _build_block_parser() -> argparse.ArgumentParser:
    parser = _plan_parser("Plan Dispatcher - block a plan")
    parser.add_argument("--reason", type=str, default=None, help="Reason recorded as the plan's last error")
    return parser


def _build_logs_parser() -> argparse.ArgumentParser:
    parser = _plan_parser("Plan Dispatcher - show a plan's details and latest agent log")
    parser.add_argument("--lines", type=int, default=LOG_TAIL_LINES, help="Log lines to show")
    return parser


def _build_events_parser() -> argparse.ArgumentParser:
    parser = _base_parser("Plan Dispatcher - show recent dispatcher events")
    parser.add_argument("--limit", type=int, default=20, help="Number of events to show")
    parser.add_argument("--json", action="store_true", help="Print raw JSON lines")
    return parser


def _find_plan(store: StateStore, plan_id: str) -> PlanState:
    plan = store.load_state().plans.get(plan_id)
    if plan is None:
        raise PlanNotFoundError(plan_id)
    return plan


def _run_command(project_dir: Path, *, once: bool, no_tmux: bool) -> int:
    dispatcher = Dispatcher(project_dir, use_tmux=False if no_tmux else None)
    dispatcher.run(once=once)
    return 0


def _status_command(project_dir: Path, *, as_json: bool = False) -> int:
    store = StateStore(project_dir)
    state = store.load_state()
    if as_json:
        sys.stdout.write(json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n")
        return 0

    lock = store.read_lock()
    console = Console(file=sys.stdout)
    console.print(f"Project: {store.project_dir}")
    console.print(f"Dispatcher: {'running (PID ' + str(lock.pid) + ')' if lock else 'not running'}")

    if not state.plans and not state.inbox:
        console.print("No plans.")
        return 0

    if state.plans:
        table = Table(title="Plans")
        for column in ("Plan", "Status", "Blocked", "TODO", "Retries", "Agent", "Run", "Last error"):
            table.add_column(column)
        for plan_id in sorted(state.plans):
            plan = state.plans[plan_id]
            run = plan.session or (f"pid {plan.pid}" if plan.pid else "-")
            todo = f"#{plan.last_todo_index + 1}" if plan.last_todo_index is not None else "-"
            last_error = (plan.last_error or "").splitlines()[0] if plan.last_error else ""
            table.add_row(
                plan_id,
                status_text(plan.status),
                "yes" if plan.blocked else "",
                todo,
                str(plan.todo_retry_count),
                plan.agent or "-",
                run,
                last_error[:80],
            )
        console.print(table)

    if state.inbox:
        inbox = Table(title="Inbox")
        inbox.add_column("Plan")
        inbox.add_column("Status")
        inbox.add_column("Agent")
        for plan_id in sorted(state.inbox):
            entry = state.inbox[plan_id]
            inbox.add_row(plan_id, status_text(entry.status), entry.agent or "-")
        console.print(inbox)
    return 0


def _queue_command(project_dir: Path, plan_id: str, agent: Optional[str]) -> int:
    if agent:
        get_adapter(agent)
    operations.queue_plan(StateStore(project_dir), plan_id, agent=agent)
    sys.stdout.write(f"Queued {plan_id}\n")
    return 0


def _block_command(project_dir: Path, plan_id: str, reason: Optional[str]) -> int:
    operations.block_plan(StateStore(project_dir), plan_id, reason)
    sys.stdout.write(f"Blocked {plan_id}\n")
    return 0


def _unblock_command(project_dir: Path, plan_id: str) -> int:
    operations.unblock_plan(StateStore(project_dir), plan_id)
    sys.stdout.write(f"Unblocked {plan_id}; retry counter reset\n")
    return 0


def _resume_command(project_dir: Path, plan_id: str) -> int:
    if operations.resume_plan(StateStore(project_dir), plan_id):
        sys.stdout.write(f"Resumed {plan_id}\n")
    else:
        sys.stdout.write(f"Plan {plan_id} is not paused; nothing to resume\n")
    return 0


def _done_command(project_dir: Path, plan_id: str) -> int:
    operations.complete_plan(StateStore(project_dir), plan_id)
    sys.stdout.write(f"Marked {plan_id} done\n")
    return 0


def _archive_command(project_dir: Path, plan_id: str) -> int:
    path = operations.archive_plan(StateStore(project_dir), plan_id)
    sys.stdout.write(f"Archived {plan_id} to {path}\n")
    return 0


def _enqueue_command(project_dir: Path, command_type: str, plan_id: str) -> int:
    store = StateStore(project_dir)
    operations.request_command(store, CommandQueue(store.project_dir), command_type, plan_id)
    sys.stdout.write(f"Queued {command_type} for {plan_id}\n")
    if store.read_lock() is None:
        sys.stdout.write("Dispatcher is not running; the command applies on its next cycle\n")
    return 0


def _logs_command(project_dir: Path, plan_id: str, lines: int) -> int:
    store = StateStore(project_dir)
    plan = _find_plan(store, plan_id)
    config = load_dispatcher_config(store.project_dir)
    runner = SessionRunner(store.sessions_dir)

    sys.stdout.write(f"Plan:        {plan_id}\n")
    sys.stdout.write(f"Status:      {status_text(plan.status)}{' (blocked)' if plan.blocked else ''}\n")
    sys.stdout.write(f"Worktree:    {plan.worktree or '-'}\n")
    sys.stdout.write(f"Branch:      {plan.branch or '-'}\n")
    sys.stdout.write(f"Session:     {plan.session or '-'}\n")
    sys.stdout.write(f"Last polled: {plan.last_polled_at or '-'}\n")
    sys.stdout.write(f"Last error:  {plan.last_error or '-'}\n")

    triage = plan.run_purpose == "triage"
    run_name = run_name_for(config.session_prefix, plan_id, triage=triage)
    log_path = runner.paths(run_name).log_file
    tail = _tail_lines(runner.read_log_tail(run_name, max_chars=lines * 400), lines)
    if not tail:
        sys.stdout.write(f"\nNo log at {log_path}\n")
        return 0
    sys.stdout.write(f"\n--- {log_path} (last {len(tail)} lines) ---\n")
    sys.stdout.write("\n".join(tail) + "\n")
    return 0


def _watch_command(project_dir: Path, plan_id: str) -> int:
    store = StateStore(project_dir)
    plan = _find_plan(store, plan_id)
    runner = SessionRunner(store.sessions_dir)
    if not plan.session or not runner.has_session(plan.session):
        sys.stderr.write(f"No active tmux session for {plan_id}\n")
        return 1
    sys.stdout.write(f"Attaching to {plan.session} (read-only); press Ctrl+B D to detach\n")
    sys.stdout.flush()
    return runner.attach_read_only(plan.session)


def _open_command(project_dir: Path, plan_id: str) -> int:
    store = StateStore(project_dir)
    plan = _find_plan(store, plan_id)
    if plan.has_live_run:
        sys.stderr.write(
            f"An agent is still running for {plan_id}; use `plan-dispatcher kill {plan_id}` first\n"
        )
        return 1
    config = load_dispatcher_config(store.project_dir)
    selection = resolve_agent_for_role(config, "worker", plan.agent)
    adapter = get_adapter(selection.agent)
    adapter.interactive(Path(plan.worktree), model=selection.model)
    return 0


def _agents_command() -> int:
    for name in get_agent_names():
        sys.stdout.write(f"{name}\n")
    return 0


def _events_command(project_dir: Path, *, limit: int, as_json: bool) -> int:
    store = StateStore(project_dir)
    path = store.state_dir / EVENTS_FILE
    if not path.exists():
        sys.stdout.write("No events recorded\n")
        return 0
    lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    for line in lines[-limit:] if limit > 0 else []:
        if as_json:
            sys.stdout.write(line + "\n")
            continue
        try:
            event: dict[str, Any] = json.loads(line)
        except json.JSONDecodeError:
            continue
        details = {k: v for k, v in event.items() if k not in {"timestamp", "type", "plan_id"}}
        plan = f" [{event['plan_id']}]" if event.get("plan_id") else ""
        extra = f" {json.dumps(details, sort_keys=True)}" if details else ""
        sys.stdout.write(f"{event.get('timestamp', '')} {event.get('type', '')}{plan}{extra}\n")
    return 0


_PLAN_COMMANDS: dict[str, tuple[str, Callable[[Path, str], int]]] = {
    "unblock": ("Plan Dispatcher - unblock a plan and reset its retry counter", _unblock_command),
    "resume": ("Plan Dispatcher - resume a paused plan", _resume_command),
    "done": ("Plan Dispatcher - mark a plan done", _done_command),
    "archive": ("Plan Dispatcher - remove a plan from state", _archive_command),
    "watch": ("Plan Dispatcher - attach read-only to a plan's tmux session", _watch_command),
    "open": ("Plan Dispatcher - run the plan's agent interactively in its worktree", _open_command),
}

_QUEUED_COMMANDS = {
    "stop": COMMAND_STOP,
    "review": COMMAND_REVIEW,
    "kill": COMMAND_KILL,
    "poll": COMMAND_POLL,
}

COMMANDS = ("run", "status", "queue", "block", "logs", "agents", "events", *_PLAN_COMMANDS, *_QUEUED_COMMANDS)


def _dispatch(argv: list[str]) -> int:
    command, rest = argv[0], argv[1:]
    if command == "run":
        args = _build_run_parser().parse_args(rest)
        _configure_logging(args.log_level)
        return _run_command(args.project_dir, once=bool(args.once), no_tmux=bool(args.no_tmux))
    if command == "status":
        args = _build_status_parser().parse_args(rest)
        _configure_logging(args.log_level)
        return _status_command(args.project_dir, as_json=bool(args.json))
    if command == "queue":
        args = _build_queue_parser().parse_args(rest)
        _configure_logging(args.log_level)
        return _queue_command(args.project_dir, args.plan_id, args.agent)
    if command == "block":
        args = _build_block_parser().parse_args(rest)
        _configure_logging(args.log_level)
        return _block_command(args.project_dir, args.plan_id, args.reason)
    if command == "logs":
        args = _build_logs_parser().parse_args(rest)
        _configure_logging(args.log_level)
        return _logs_command(args.project_dir, args.plan_id, args.lines)
    if command == "agents":
        _configure_logging(_base_parser("Plan Dispatcher - list agents").parse_args(rest).log_level)
        return _agents_command()
    if command == "events":
        args = _build_events_parser().parse_args(rest)
        _configure_logging(args.log_level)
        return _events_command(args.project_dir, limit=args.limit, as_json=bool(args.json))
    if command in _PLAN_COMMANDS:
        description, handler = _PLAN_COMMANDS[command]
        args = _plan_parser(description).parse_args(rest)
        _configure_logging(args.log_level)
        return handler(args.project_dir, args.plan_id)
    if command in _QUEUED_COMMANDS:
        args = _plan_parser(f"Plan Dispatcher - ask the running dispatcher to {command} a plan").parse_args(rest)
        _configure_logging(args.log_level)
        return _enqueue_command(args.project_dir, _QUEUED_COMMANDS[command], args.plan_id)
    sys.stderr.write(f"Unknown command: {command}\n")
    sys.stderr.write(f"Available commands: {', '.join(COMMANDS)}\n")
    return 2


def main(argv: list[str] | None = None) -> None:
    """Run the `plan-dispatcher` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return a process exit code for every subcommand.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] in {"-h", "--help"}:
        sys.stdout.write("usage: plan-dispatcher <command> [options]\n\n")
        sys.stdout.write(f"commands: {', '.join(COMMANDS)}\n")
        raise SystemExit(0 if argv else 2)
    try:
        code = _dispatch(argv)
    except DispatcherError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        code = 1
    raise SystemExit(code)


if __name__ == "__main__":
    main()
