"""The dispatcher control loop.

One cycle, run under the singleton lock and the state mutex:

1. drain queued operator commands past the persisted cursor,
2. promote queued inbox plans into working trees while capacity allows,
3. launch a worker for every dispatchable plan with no live run,
4. poll every live run without blocking and apply the retry/advance policy,
5. poll the review provider for plans in `reviewing` and start triage,
6. persist the snapshot (cursor included) atomically.

Each plan is processed in isolation: a collaborator or spawn failure on one
plan is recorded on that plan and never aborts the cycle for the others.
"""

from __future__ import annotations

import json
import os
import signal
import time
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .config import DispatcherConfig, load_dispatcher_config
from .constants import (
    COMMAND_KILL,
    COMMAND_POLL,
    COMMAND_REVIEW,
    COMMAND_STOP,
    ERROR_ZERO_TODOS,
    EVENTS_FILE,
    LOG_TAIL_LINES,
    WORKTREE_PLAN_RELPATH,
    WORKTREE_TRIAGE_RESULT_RELPATH,
)
from .control import CommandQueue
from .errors import DispatcherError, InvalidTransitionError, ProviderError, SpawnError, UnknownAgentError
from .events import EventHub, hub
from .fsm import (
    RunOutcome,
    apply_run_outcome,
    begin_triage,
    block,
    finish_triage,
    is_dispatchable,
    mark_review,
    pause,
    select_todo,
    start_review,
)
from .git_utils import _branch_name_for
from .io_utils import _atomic_write_text
from .models import (
    ExecutionResult,
    GlobalState,
    PlanState,
    PlanStatus,
    QueuedCommand,
    RunPhase,
    RunPurpose,
    status_text,
)
from .plan_parser import MarkdownPlanParser, PlanParser
from .process import is_process_alive, terminate_process
from .prompts import PromptRenderer, TemplatePromptRenderer
from .review import ReviewContext, ReviewProvider, get_review_provider
from .session import SessionRunner, run_name_for
from .state import StateStore
from .utils import _now_iso, _tail_lines
from .workers import AgentRegistry, ExecuteRequest, SessionDescriptor, default_registry, resolve_agent_for_role
from .worktree import GitWorktreeProvider, WorktreeProvider, ensure_local_dir

MANUAL_AGENT = "manual"
# Exit code recorded for an attempt whose agent never started or whose work
# could not be committed.
FAILED_ATTEMPT_EXIT_CODE = -1


class Dispatcher:
    def __init__(
        self,
        project_dir: Path,
        *,
        config: Optional[DispatcherConfig] = None,
        store: Optional[StateStore] = None,
        queue: Optional[CommandQueue] = None,
        registry: Optional[AgentRegistry] = None,
        runner: Optional[SessionRunner] = None,
        worktrees: Optional[WorktreeProvider] = None,
        parser: Optional[PlanParser] = None,
        renderer: Optional[PromptRenderer] = None,
        review_provider: Optional[ReviewProvider] = None,
        events: Optional[EventHub] = None,
        use_tmux: Optional[bool] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.config = config or load_dispatcher_config(self.project_dir)
        self.store = store or StateStore(self.project_dir)
        self.queue = queue or CommandQueue(self.project_dir)
        self.registry = registry or default_registry()
        self.runner = runner or SessionRunner(
            self.store.sessions_dir,
            missing_marker_exit_code=self.config.missing_marker_exit_code,
        )
        self.worktrees = worktrees or GitWorktreeProvider()
        self.parser = parser or MarkdownPlanParser()
        self.renderer = renderer or TemplatePromptRenderer()
        self.review_provider = review_provider or get_review_provider(self.config.review_provider)
        self.events = events or hub
        self._use_tmux_override = use_tmux
        self._use_tmux: Optional[bool] = None
        self._sleep = sleep
        self._holding_lock = False
        self._stop_requested = False

    @property
    def use_tmux(self) -> bool:
        if self._use_tmux is None:
            wanted = self.config.use_tmux if self._use_tmux_override is None else self._use_tmux_override
            self._use_tmux = bool(wanted) and self.runner.has_tmux()
            if wanted and not self._use_tmux:
                logger.warning("tmux not available; agents will run as detached processes")
        return self._use_tmux

    # ------------------------------------------------------------------
    # Loop

    def run(self, once: bool = False) -> None:
        """Hold the lock and run cycles until stopped (or once).

        Raises:
            LockHeldError: If another dispatcher is already running.
            StateIOError: If the snapshot cannot be read or written.
        """
        self.store.acquire_lock()
        self._holding_lock = True
        self.events.start(sink=self.store.state_dir / EVENTS_FILE)
        previous = self._install_signal_handlers()
        logger.info("Dispatcher started in {} (tmux={})", self.project_dir, self.use_tmux)
        self.events.publish("dispatcher_started", pid=os.getpid())
        try:
            while not self._stop_requested:
                self.run_cycle()
                if once:
                    break
                self._wait(self.config.poll_interval_seconds)
        finally:
            self._restore_signal_handlers(previous)
            self._holding_lock = False
            self.store.release_lock()
            self.events.publish("dispatcher_stopped")
            logger.info("Dispatcher stopped")

    def request_stop(self) -> None:
        self._stop_requested = True

    def _wait(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._sleep(min(remaining, 0.5))

    def _install_signal_handlers(self) -> dict[int, Any]:
        previous: dict[int, Any] = {}

        def _handle(signum: int, _frame: Any) -> None:
            logger.info("Received signal {}, finishing current cycle", signum)
            self.request_stop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                previous[signum] = signal.signal(signum, _handle)
            except ValueError:
                # Not the main thread; the caller owns shutdown.
                pass
        return previous

    def _restore_signal_handlers(self, previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def run_cycle(self) -> GlobalState:
        """Run one cycle and return the persisted state.

        Outside `run()` the singleton lock is taken and released around the
        cycle, so a one-off cycle still refuses to race a running dispatcher.
        """
        if self._holding_lock:
            return self._locked_cycle()
        self.store.acquire_lock()
        try:
            return self._locked_cycle()
        finally:
            self.store.release_lock()

    def _locked_cycle(self) -> GlobalState:
        with self.store.transaction() as state:
            self._drain_commands(state)
            self._ingest_inbox(state)
            for plan_id in sorted(state.plans):
                self._process_plan(state.plans[plan_id])
        return state

    # ------------------------------------------------------------------
    # Commands

    def _drain_commands(self, state: GlobalState) -> None:
        commands, cursor = self.queue.consume(state.control_cursor)
        for command in commands:
            plan = state.plans.get(command.plan_id)
            if plan is None:
                logger.warning("Ignoring {} for unknown plan {}", command.type, command.plan_id)
                continue
            try:
                self._apply_command(plan, command)
            except InvalidTransitionError as exc:
                logger.warning("{}", exc)
                self.events.publish("command_rejected", plan.id, command=command.type, error=str(exc))
                continue
            self.events.publish("command_applied", plan.id, command=command.type, status=status_text(plan.status))
        state.control_cursor = max(state.control_cursor, cursor)

    def _apply_command(self, plan: PlanState, command: QueuedCommand) -> None:
        if command.type == COMMAND_STOP:
            pause(plan)
            logger.info("Plan {} paused", plan.id)
        elif command.type == COMMAND_REVIEW:
            start_review(plan)
            plan.poll_once = True
            logger.info("Plan {} entering review", plan.id)
        elif command.type == COMMAND_KILL:
            self._kill_run(plan)
        elif command.type == COMMAND_POLL:
            plan.poll_once = True
        else:
            logger.warning("Unknown command type {} for plan {}", command.type, plan.id)

    def _kill_run(self, plan: PlanState) -> None:
        if plan.session:
            self.runner.kill_session(plan.session)
        elif plan.pid:
            terminate_process(plan.pid)
        had_run = plan.has_live_run
        plan.clear_run()
        if plan.status != PlanStatus.DONE:
            pause(plan)
        if had_run:
            plan.last_error = "Run killed by operator"
        logger.info("Plan {} killed and paused", plan.id)

    # ------------------------------------------------------------------
    # Inbox

    def _active_count(self, state: GlobalState) -> int:
        return sum(
            1
            for plan in state.plans.values()
            if plan.has_live_run or (plan.status == PlanStatus.ACTIVE and not plan.blocked)
        )

    def _ingest_inbox(self, state: GlobalState) -> None:
        queued = [plan_id for plan_id, entry in sorted(state.inbox.items()) if entry.status == PlanStatus.QUEUED]
        for plan_id in queued:
            if self._active_count(state) >= self.config.max_active_plans:
                logger.debug("At capacity ({} active plans); {} waits", self.config.max_active_plans, plan_id)
                return
            entry = state.inbox[plan_id]
            if plan_id in state.plans:
                logger.warning("Inbox plan {} already exists as an active plan; skipping", plan_id)
                entry.extra["last_error"] = "A plan with this id is already active"
                continue
            source = self.store.inbox_path(plan_id)
            if not source.exists():
                logger.warning("Inbox plan {} has no document at {}; dropping entry", plan_id, source)
                state.inbox.pop(plan_id, None)
                continue
            try:
                plan = self._create_plan(plan_id, source, entry.agent)
            except ProviderError as exc:
                logger.error("Unable to ingest plan {}: {}", plan_id, exc)
                entry.extra["last_error"] = str(exc)
                continue
            state.plans[plan_id] = plan
            state.inbox.pop(plan_id, None)
            self.store.delete_inbox_plan(plan_id)
            logger.info("Plan {} activated in {}", plan_id, plan.worktree)
            self.events.publish("plan_ingested", plan_id, worktree=plan.worktree, branch=plan.branch)

    def _create_plan(self, plan_id: str, source: Path, agent: Optional[str]) -> PlanState:
        document = self.parser.parse(source)
        base_branch = str(document.frontmatter.get("base_branch") or self.config.base_branch)
        branch = _branch_name_for(plan_id)
        worktree = self.worktrees.create_worktree(
            self.project_dir,
            self.config.resolve_worktrees_dir(self.project_dir),
            branch,
            base_branch,
        )
        ensure_local_dir(worktree)
        self.worktrees.copy_file(source, worktree, WORKTREE_PLAN_RELPATH)
        return PlanState(
            id=plan_id,
            status=PlanStatus.ACTIVE,
            worktree=str(worktree),
            branch=branch,
            base_branch=base_branch,
            plan_relpath=WORKTREE_PLAN_RELPATH,
            agent=agent or document.frontmatter.get("agent"),
        )

    # ------------------------------------------------------------------
    # Per-plan processing

    def _process_plan(self, plan: PlanState) -> None:
        try:
            self._recover_run_phase(plan)
            if is_dispatchable(plan):
                self._dispatch_worker(plan)
            if plan.has_live_run:
                self._poll_run(plan)
            if plan.status == PlanStatus.REVIEWING and not plan.has_live_run:
                self._poll_review(plan)
        except UnknownAgentError as exc:
            logger.error("Plan {}: {}", plan.id, exc)
            plan.clear_run()
            block(plan, str(exc))
            self.events.publish("plan_blocked", plan.id, error=str(exc))
        except (DispatcherError, OSError) as exc:
            logger.error("Plan {}: {}", plan.id, exc)
            if not plan.has_live_run:
                plan.clear_run()
            plan.last_error = str(exc)
            self.events.publish("plan_error", plan.id, error=str(exc))

    def _recover_run_phase(self, plan: PlanState) -> None:
        if plan.run_phase != RunPhase.IDLE and not plan.has_live_run:
            logger.warning("Plan {} had a dangling {} run; resetting", plan.id, plan.run_phase.value)
            plan.clear_run()

    def _plan_path(self, plan: PlanState) -> Path:
        return Path(plan.worktree) / plan.plan_relpath

    def _run_name(self, plan: PlanState, purpose: RunPurpose) -> str:
        return run_name_for(self.config.session_prefix, plan.id, triage=purpose == RunPurpose.TRIAGE)

    def _dispatch_worker(self, plan: PlanState) -> None:
        document = self.parser.parse(self._plan_path(plan))
        if not document.todos:
            block(plan, ERROR_ZERO_TODOS)
            logger.warning("Plan {} has no TODO items; blocked", plan.id)
            self.events.publish("plan_blocked", plan.id, error=ERROR_ZERO_TODOS)
            return
        todo = document.next_unchecked()
        if todo is None:
            mark_review(plan)
            logger.info("Plan {}: all TODOs complete, ready for review", plan.id)
            self.events.publish("plan_review_ready", plan.id)
            return
        if todo.blocked:
            reason = f"Blocked by {todo.label}: {todo.text}"
            block(plan, reason)
            logger.warning("Plan {} {}", plan.id, reason)
            self.events.publish("plan_blocked", plan.id, error=reason)
            return

        selection = resolve_agent_for_role(self.config, RunPurpose.WORKER.value, plan.agent)
        if selection.agent == MANUAL_AGENT:
            return
        adapter = self.registry.get(selection.agent)

        select_todo(plan, todo.index)
        prompt = self.renderer.render_worker_prompt(self.project_dir, plan.plan_relpath, document, todo)
        logger.info("Plan {}: dispatching {} to {} (attempt {})", plan.id, todo.label, adapter.name, plan.todo_retry_count + 1)
        try:
            self._launch(plan, adapter, prompt, RunPurpose.WORKER, selection.model, todo_index=todo.index)
        except SpawnError as exc:
            logger.error("Plan {}: failed to launch {}: {}", plan.id, adapter.name, exc)
            plan.clear_run()
            decision = apply_run_outcome(
                plan,
                todo.index,
                FAILED_ATTEMPT_EXIT_CODE,
                max_retries=self.config.max_todo_retries,
                error_detail=str(exc),
            )
            self._publish_outcome(plan, todo.label, decision.outcome)

    def _launch(
        self,
        plan: PlanState,
        adapter: Any,
        prompt: str,
        purpose: RunPurpose,
        model: Optional[str],
        todo_index: Optional[int] = None,
    ) -> None:
        run_name = self._run_name(plan, purpose)
        plan.run_phase = RunPhase.LAUNCHING
        plan.run_purpose = purpose.value
        plan.run_todo_index = todo_index
        request = ExecuteRequest(
            working_dir=Path(plan.worktree),
            prompt=prompt,
            session=SessionDescriptor(run_name) if self.use_tmux else None,
            model=model,
            run_name=run_name,
            runner=self.runner,
        )
        result = adapter.execute(request)
        plan.session = result.session
        plan.pid = result.pid
        plan.run_started_at = _now_iso()
        plan.run_phase = RunPhase.RUNNING
        self.events.publish(
            "run_started",
            plan.id,
            purpose=purpose.value,
            agent=adapter.name,
            session=result.session,
            pid=result.pid,
        )
        if not result.pending:
            self._complete_run(plan, result)

    def _poll_run(self, plan: PlanState) -> None:
        purpose = RunPurpose(plan.run_purpose or RunPurpose.WORKER.value)
        result: Optional[ExecutionResult]
        if plan.session:
            result = self.runner.poll_session(plan.session)
        elif is_process_alive(plan.pid):
            result = None
        else:
            result = self.runner.read_execution_result(self._run_name(plan, purpose))
        if result is None:
            return
        self._complete_run(plan, result)

    def _complete_run(self, plan: PlanState, result: ExecutionResult) -> None:
        purpose = RunPurpose(plan.run_purpose or RunPurpose.WORKER.value)
        run_name = self._run_name(plan, purpose)
        exit_code = result.exit_code if result.exit_code is not None else self.config.missing_marker_exit_code
        plan.run_phase = RunPhase.COMPLETED
        tail = "\n".join(_tail_lines(self.runner.read_log_tail(run_name), LOG_TAIL_LINES))
        logger.info("Plan {}: {} run finished with exit code {}", plan.id, purpose.value, exit_code)
        try:
            if purpose == RunPurpose.TRIAGE:
                self._finish_triage(plan, exit_code, tail)
            else:
                self._finish_worker(plan, exit_code, tail)
        finally:
            plan.run_phase = RunPhase.REAPED
            self.events.publish("run_reaped", plan.id, purpose=purpose.value, exit_code=exit_code)
            plan.clear_run()

    def _finish_worker(self, plan: PlanState, exit_code: int, tail: str) -> None:
        todo_index = plan.run_todo_index
        if todo_index is None:
            todo_index = plan.last_todo_index if plan.last_todo_index is not None else 0
        label = f"TODO #{todo_index + 1}"
        if exit_code != 0:
            decision = apply_run_outcome(
                plan,
                todo_index,
                exit_code,
                max_retries=self.config.max_todo_retries,
                error_detail=f"Log tail:\n{tail}" if tail else None,
            )
            self._publish_outcome(plan, label, decision.outcome)
            return

        plan_path = self._plan_path(plan)
        document = self.parser.parse(plan_path)
        todo = document.todo_at(todo_index)
        original = plan_path.read_text(encoding="utf-8")
        self.parser.mark_todo_done(plan_path, todo_index)
        try:
            if todo is not None and self.worktrees.commit_all(Path(plan.worktree), todo.text):
                logger.info("Plan {}: committed {}", plan.id, todo.label)
        except ProviderError as exc:
            # The TODO stays open so the next attempt redoes it under its own message.
            _atomic_write_text(plan_path, original)
            logger.error("Plan {}: unable to commit {}: {}", plan.id, label, exc)
            decision = apply_run_outcome(
                plan,
                todo_index,
                FAILED_ATTEMPT_EXIT_CODE,
                max_retries=self.config.max_todo_retries,
                error_detail=f"Commit failed: {exc}",
            )
            self._publish_outcome(plan, label, decision.outcome)
            return
        decision = apply_run_outcome(plan, todo_index, 0, max_retries=self.config.max_todo_retries)
        self._publish_outcome(plan, label, decision.outcome)

        if plan.status == PlanStatus.ACTIVE and self.parser.parse(plan_path).next_unchecked() is None:
            mark_review(plan)
            logger.info("Plan {}: all TODOs complete, ready for review", plan.id)
            self.events.publish("plan_review_ready", plan.id)

    def _publish_outcome(self, plan: PlanState, label: str, outcome: RunOutcome) -> None:
        if outcome == RunOutcome.ADVANCED:
            self.events.publish("todo_completed", plan.id, todo=label)
        elif outcome == RunOutcome.RETRY:
            logger.warning("Plan {}: {} failed, retry {}/{}", plan.id, label, plan.todo_retry_count, self.config.max_todo_retries)
            self.events.publish("todo_failed", plan.id, todo=label, retry_count=plan.todo_retry_count)
        else:
            logger.error("Plan {}: {} exhausted its retries; blocked", plan.id, label)
            self.events.publish("plan_blocked", plan.id, todo=label, error=plan.last_error)

    # ------------------------------------------------------------------
    # Review and triage

    def _review_context(self, plan: PlanState) -> ReviewContext:
        interval = 0.0 if plan.poll_once else self.config.review_poll_interval_seconds
        return ReviewContext(
            repo_root=self.project_dir,
            worktree=Path(plan.worktree),
            plan_id=plan.id,
            branch=plan.branch,
            change_request=plan.change_request,
            poll_interval_seconds=interval,
        )

    def _poll_review(self, plan: PlanState) -> None:
        selection = resolve_agent_for_role(self.config, RunPurpose.TRIAGE.value)
        if plan.agent == MANUAL_AGENT or selection.agent == MANUAL_AGENT:
            return
        context = self._review_context(plan)
        result = self.review_provider.poll(context, plan.review_state)
        plan.review_state = dict(result.state)
        plan.last_polled_at = _now_iso()
        plan.poll_once = False
        if not result.items:
            return

        logger.info("Plan {}: {} new review item(s), starting triage", plan.id, len(result.items))
        self.events.publish("review_items", plan.id, items=[item.to_dict() for item in result.items])
        adapter = self.registry.get(selection.agent)
        document = self.parser.parse(self._plan_path(plan))
        prompt = self.renderer.render_triage_prompt(self.project_dir, plan.plan_relpath, document, result.items)
        begin_triage(plan)
        (Path(plan.worktree) / WORKTREE_TRIAGE_RESULT_RELPATH).unlink(missing_ok=True)
        try:
            self._launch(plan, adapter, prompt, RunPurpose.TRIAGE, selection.model)
        except SpawnError as exc:
            logger.error("Plan {}: failed to launch triage: {}", plan.id, exc)
            plan.clear_run()
            finish_triage(plan, FAILED_ATTEMPT_EXIT_CODE, f"Triage failed to start: {exc}")
            self.events.publish("plan_blocked", plan.id, error=plan.last_error)

    def _finish_triage(self, plan: PlanState, exit_code: int, tail: str) -> None:
        if plan.status != PlanStatus.TRIAGING:
            logger.warning("Plan {} left triage while it ran (now {}); keeping status", plan.id, status_text(plan.status))
            return
        if exit_code != 0:
            detail = f"Triage agent exited with code {exit_code}"
            finish_triage(plan, exit_code, f"{detail}\nLog tail:\n{tail}" if tail else detail)
            self.events.publish("plan_blocked", plan.id, error=plan.last_error)
            return

        reply = self._read_triage_reply(plan)
        if reply:
            response = self.review_provider.respond(self._review_context(plan), reply)
            if not response.success:
                logger.warning("Plan {}: unable to post triage reply: {}", plan.id, response.error)
        if self.worktrees.commit_all(Path(plan.worktree), f"[dispatcher] {plan.id}: triage"):
            logger.info("Plan {}: committed triage changes", plan.id)
        finish_triage(plan, 0)
        self.events.publish("triage_completed", plan.id)

    def _read_triage_reply(self, plan: PlanState) -> Optional[str]:
        path = Path(plan.worktree) / WORKTREE_TRIAGE_RESULT_RELPATH
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Plan {}: unreadable triage result {}: {}", plan.id, path, exc)
            return None
        reply = data.get("reply_markdown") if isinstance(data, dict) else None
        if not reply:
            return None
        return str(reply).strip() or None
