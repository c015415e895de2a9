"""Drive full dispatcher cycles against fake agents, worktrees and reviewers."""

from __future__ import annotations

import json
import shutil
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from plan_dispatcher import operations
from plan_dispatcher.config import DispatcherConfig
from plan_dispatcher.constants import ERROR_ZERO_TODOS, WORKTREE_PLAN_RELPATH, WORKTREE_TRIAGE_RESULT_RELPATH
from plan_dispatcher.control import CommandQueue
from plan_dispatcher.dispatcher import Dispatcher
from plan_dispatcher.errors import LockHeldError, ProviderError, SpawnError
from plan_dispatcher.events import EventHub
from plan_dispatcher.models import ExecutionResult, PlanState, PlanStatus, RunPhase
from plan_dispatcher.review.base import PollResult, RespondResult, ReviewItem
from plan_dispatcher.session import SessionRunner
from plan_dispatcher.state import StateStore
from plan_dispatcher.workers import AgentAdapter, AgentRegistry

PENDING = "pending"

TWO_TODOS = """---
id: p1
---
# Plan one

## Objective
Ship it.

## TODO
- [ ] Write the form
- [ ] Hook up sessions

## Progress Log
"""


class FakeAdapter(AgentAdapter):
    """Returns scripted results: an int exit code, PENDING, or an exception to raise."""

    def __init__(self, name: str = "codex", script: Optional[list[Any]] = None, on_execute: Optional[Callable] = None):
        self.name = name
        self.script = list(script or [])
        self.requests = []
        self.on_execute = on_execute

    @property
    def prompts(self) -> list[str]:
        return [request.prompt for request in self.requests]

    def execute(self, request):
        self.requests.append(request)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        if self.on_execute is not None:
            self.on_execute(request)
        if step == PENDING:
            return ExecutionResult(session=request.run_name)
        return ExecutionResult(exit_code=step)

    def interactive(self, working_dir, prompt=None, model=None):
        return None


class FakeRunner(SessionRunner):
    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.results: dict[str, ExecutionResult] = {}
        self.killed: list[str] = []

    def has_tmux(self) -> bool:
        return False

    def poll_session(self, session_id):
        return self.results.get(session_id)

    def kill_session(self, session_id):
        self.killed.append(session_id)
        return True


class FakeWorktrees:
    def __init__(self) -> None:
        self.created: list[tuple[str, str]] = []
        self.commits: list[str] = []

    def create_worktree(self, repo_root, worktrees_root, branch, base_branch):
        path = Path(worktrees_root) / branch
        path.mkdir(parents=True)
        self.created.append((branch, base_branch))
        return path

    def copy_file(self, src, worktree, rel_dest):
        dest = Path(worktree) / rel_dest
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dest)
        return dest

    def commit_all(self, worktree, message):
        self.commits.append(message)
        return True


class FakeReview:
    name = "fake"

    def __init__(self, batches: Optional[list[list[ReviewItem]]] = None) -> None:
        self.batches = list(batches or [])
        self.contexts = []
        self.responses: list[str] = []

    def poll(self, context, state):
        self.contexts.append(context)
        items = self.batches.pop(0) if self.batches else []
        return PollResult(items=items, state={"polls": int(state.get("polls", 0)) + 1})

    def respond(self, context, message, related_item_id=None):
        self.responses.append(message)
        return RespondResult(success=True)


def _make_dispatcher(
    tmp_path: Path,
    adapter: AgentAdapter,
    *,
    review: Optional[FakeReview] = None,
    **config: Any,
) -> Dispatcher:
    store = StateStore(tmp_path)
    return Dispatcher(
        tmp_path,
        config=DispatcherConfig(**config),
        store=store,
        registry=AgentRegistry([adapter]),
        runner=FakeRunner(store.sessions_dir),
        worktrees=FakeWorktrees(),
        review_provider=review or FakeReview(),
        events=EventHub(),
        use_tmux=False,
    )


def _seed_plan(tmp_path: Path, text: str = TWO_TODOS, plan_id: str = "p1", **fields: Any) -> Path:
    worktree = tmp_path / "worktrees" / plan_id
    plan_path = worktree / WORKTREE_PLAN_RELPATH
    plan_path.parent.mkdir(parents=True)
    plan_path.write_text(text)
    store = StateStore(tmp_path)
    with store.transaction() as state:
        state.plans[plan_id] = PlanState(
            id=plan_id,
            status=fields.pop("status", PlanStatus.ACTIVE),
            worktree=str(worktree),
            branch=f"{plan_id}-abcde",
            base_branch="main",
            plan_relpath=WORKTREE_PLAN_RELPATH,
            **fields,
        )
    return plan_path


def _plan(tmp_path: Path, plan_id: str = "p1") -> PlanState:
    return StateStore(tmp_path).load_state().plans[plan_id]


def test_successful_runs_commit_each_todo_and_reach_review(tmp_path: Path) -> None:
    plan_path = _seed_plan(tmp_path)
    adapter = FakeAdapter(script=[0, 0])
    dispatcher = _make_dispatcher(tmp_path, adapter)

    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.ACTIVE
    assert plan.last_todo_index == 1
    assert plan.run_phase == RunPhase.IDLE
    assert "TODO #1: Write the form" in adapter.prompts[0]

    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.REVIEW
    assert "TODO #2: Hook up sessions" in adapter.prompts[1]
    assert dispatcher.worktrees.commits == ["Write the form", "Hook up sessions"]
    assert "- [ ]" not in plan_path.read_text()

    dispatcher.run_cycle()
    assert len(adapter.requests) == 2


def test_failures_exhaust_retries_and_block(tmp_path: Path) -> None:
    _seed_plan(tmp_path)
    adapter = FakeAdapter(script=[1, 1])
    dispatcher = _make_dispatcher(tmp_path, adapter, max_todo_retries=2)

    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.ACTIVE
    assert plan.todo_retry_count == 1
    assert plan.last_todo_index == 0

    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.BLOCKED
    assert plan.blocked is True
    assert "TODO #1 failed with exit code 1" in plan.last_error
    assert "Gave up after 2 attempt(s)" in plan.last_error

    dispatcher.run_cycle()
    assert len(adapter.requests) == 2
    assert dispatcher.worktrees.commits == []


def test_unblock_retries_same_todo_from_clean_count(tmp_path: Path) -> None:
    _seed_plan(tmp_path)
    adapter = FakeAdapter(script=[1])
    dispatcher = _make_dispatcher(tmp_path, adapter, max_todo_retries=1)
    dispatcher.run_cycle()
    assert _plan(tmp_path).status == PlanStatus.BLOCKED

    operations.unblock_plan(StateStore(tmp_path), "p1")
    plan = _plan(tmp_path)
    assert plan.todo_retry_count == 0
    assert plan.last_todo_index is None

    adapter.script.append(1)
    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert "TODO #1: Write the form" in adapter.prompts[-1]
    # A fresh budget of one attempt is spent again.
    assert plan.status == PlanStatus.BLOCKED
    assert plan.todo_retry_count == 1


def test_zero_todos_blocks_without_launching(tmp_path: Path) -> None:
    _seed_plan(tmp_path, "# Empty\n\n## TODO\n\n## Progress Log\n")
    adapter = FakeAdapter()
    dispatcher = _make_dispatcher(tmp_path, adapter)
    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.BLOCKED
    assert plan.last_error == ERROR_ZERO_TODOS
    assert adapter.requests == []


def test_blocked_todo_blocks_plan(tmp_path: Path) -> None:
    _seed_plan(tmp_path, "## TODO\n- [x] done\n- [b] waiting on credentials\n- [ ] later\n")
    adapter = FakeAdapter()
    _make_dispatcher(tmp_path, adapter).run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.BLOCKED
    assert plan.last_error == "Blocked by TODO #2: waiting on credentials"
    assert adapter.requests == []


def test_stop_pauses_without_killing_running_agent(tmp_path: Path) -> None:
    _seed_plan(tmp_path)
    adapter = FakeAdapter(script=[PENDING])
    dispatcher = _make_dispatcher(tmp_path, adapter)

    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.run_phase == RunPhase.RUNNING
    assert plan.session == "dispatcher-p1"

    CommandQueue(tmp_path).enqueue("stop", "p1")
    state = dispatcher.run_cycle()
    plan = state.plans["p1"]
    assert plan.status == PlanStatus.PAUSED
    assert plan.session == "dispatcher-p1"
    assert dispatcher.runner.killed == []
    assert state.control_cursor == 1

    # The in-flight run still completes and is recorded, but nothing relaunches.
    dispatcher.runner.results["dispatcher-p1"] = ExecutionResult(exit_code=0, session="dispatcher-p1")
    dispatcher.run_cycle()
    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.PAUSED
    assert plan.session is None
    assert plan.last_todo_index == 1
    assert len(adapter.requests) == 1

    operations.resume_plan(StateStore(tmp_path), "p1")
    adapter.script.append(0)
    dispatcher.run_cycle()
    assert "TODO #2" in adapter.prompts[-1]


def test_kill_terminates_session_and_pauses(tmp_path: Path) -> None:
    _seed_plan(tmp_path)
    adapter = FakeAdapter(script=[PENDING])
    dispatcher = _make_dispatcher(tmp_path, adapter)
    dispatcher.run_cycle()

    CommandQueue(tmp_path).enqueue("kill", "p1")
    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert dispatcher.runner.killed == ["dispatcher-p1"]
    assert plan.status == PlanStatus.PAUSED
    assert plan.session is None
    assert plan.run_phase == RunPhase.IDLE
    assert plan.last_error == "Run killed by operator"
    assert plan.todo_retry_count == 0


def test_commands_are_applied_once(tmp_path: Path) -> None:
    _seed_plan(tmp_path, status=PlanStatus.PAUSED)
    dispatcher = _make_dispatcher(tmp_path, FakeAdapter())
    CommandQueue(tmp_path).enqueue("stop", "p1")
    CommandQueue(tmp_path).enqueue("stop", "ghost")
    assert dispatcher.run_cycle().control_cursor == 2

    operations.resume_plan(StateStore(tmp_path), "p1")
    operations.block_plan(StateStore(tmp_path), "p1")
    dispatcher.run_cycle()
    # The old stop entry is not replayed: the plan stays blocked, not paused.
    assert _plan(tmp_path).status == PlanStatus.BLOCKED


def test_inbox_ingestion_respects_capacity(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.inbox_dir.mkdir(parents=True)
    for plan_id in ("a", "b"):
        (store.inbox_dir / f"{plan_id}.md").write_text(TWO_TODOS.replace("id: p1", f"id: {plan_id}"))
        operations.queue_plan(store, plan_id)

    adapter = FakeAdapter(script=[PENDING])
    dispatcher = _make_dispatcher(tmp_path, adapter, max_active_plans=1)
    state = dispatcher.run_cycle()

    assert list(state.plans) == ["a"]
    assert state.inbox["b"].status == PlanStatus.QUEUED
    plan = state.plans["a"]
    assert (Path(plan.worktree) / WORKTREE_PLAN_RELPATH).exists()
    assert (Path(plan.worktree) / ".dispatcher-local" / ".gitignore").exists()
    assert plan.branch.startswith("a-")
    assert dispatcher.worktrees.created == [(plan.branch, "main")]
    assert not (store.inbox_dir / "a.md").exists()
    assert plan.has_live_run


def test_unknown_agent_blocks_plan(tmp_path: Path) -> None:
    _seed_plan(tmp_path, agent="nope")
    _make_dispatcher(tmp_path, FakeAdapter()).run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.BLOCKED
    assert "Unknown agent: nope" in plan.last_error


def test_manual_plans_are_never_launched(tmp_path: Path) -> None:
    _seed_plan(tmp_path, agent="manual")
    adapter = FakeAdapter()
    _make_dispatcher(tmp_path, adapter).run_cycle()
    assert _plan(tmp_path).status == PlanStatus.ACTIVE
    assert adapter.requests == []


def test_spawn_failure_counts_as_attempt(tmp_path: Path) -> None:
    _seed_plan(tmp_path)
    adapter = FakeAdapter(script=[SpawnError("codex: not found")])
    _make_dispatcher(tmp_path, adapter, max_todo_retries=1).run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.BLOCKED
    assert plan.last_exit_code == -1
    assert "codex: not found" in plan.last_error
    assert plan.run_phase == RunPhase.IDLE


def test_session_setup_failure_counts_as_attempt_for_every_plan(tmp_path: Path) -> None:
    _seed_plan(tmp_path, plan_id="a")
    _seed_plan(tmp_path, plan_id="b")
    store = StateStore(tmp_path)
    store.sessions_dir.write_text("not a directory")

    def prepare(request):
        request.runner.prepare_log_files(request.run_name, request.prompt)

    adapter = FakeAdapter(script=[0, 0], on_execute=prepare)
    state = _make_dispatcher(tmp_path, adapter, max_todo_retries=3).run_cycle()

    assert len(adapter.requests) == 2
    for plan_id in ("a", "b"):
        plan = state.plans[plan_id]
        assert plan.todo_retry_count == 1
        assert plan.last_exit_code == -1
        assert "Unable to prepare session directory" in plan.last_error
        assert plan.run_phase == RunPhase.IDLE
    assert _plan(tmp_path, "b").todo_retry_count == 1


def test_unexpected_error_stays_with_its_plan(tmp_path: Path) -> None:
    _seed_plan(tmp_path, plan_id="a")
    _seed_plan(tmp_path, plan_id="b")
    adapter = FakeAdapter(script=[OSError("disk full"), 0])
    _make_dispatcher(tmp_path, adapter).run_cycle()

    plan_a = _plan(tmp_path, "a")
    assert plan_a.last_error == "disk full"
    assert plan_a.run_phase == RunPhase.IDLE
    assert plan_a.status == PlanStatus.ACTIVE
    assert _plan(tmp_path, "b").last_todo_index == 1


def test_run_credits_the_todo_it_was_launched_for(tmp_path: Path) -> None:
    plan_path = _seed_plan(tmp_path, "## TODO\n- [x] first\n- [x] second\n- [ ] third\n")
    adapter = FakeAdapter(script=[PENDING])
    dispatcher = _make_dispatcher(tmp_path, adapter)
    dispatcher.run_cycle()
    assert _plan(tmp_path).run_todo_index == 2

    operations.block_plan(StateStore(tmp_path), "p1")
    operations.unblock_plan(StateStore(tmp_path), "p1")
    assert _plan(tmp_path).last_todo_index is None

    dispatcher.runner.results["dispatcher-p1"] = ExecutionResult(exit_code=0, session="dispatcher-p1")
    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert dispatcher.worktrees.commits == ["third"]
    assert "- [x] third" in plan_path.read_text()
    assert plan.status == PlanStatus.REVIEW
    assert plan.run_todo_index is None
    assert len(adapter.requests) == 1


class RejectingWorktrees(FakeWorktrees):
    def commit_all(self, worktree, message):
        raise ProviderError("git commit failed: hook rejected")


def test_commit_failure_reopens_todo_and_counts_attempt(tmp_path: Path) -> None:
    plan_path = _seed_plan(tmp_path)
    adapter = FakeAdapter(script=[0])
    dispatcher = _make_dispatcher(tmp_path, adapter, max_todo_retries=3)
    dispatcher.worktrees = RejectingWorktrees()
    dispatcher.run_cycle()

    plan = _plan(tmp_path)
    assert "- [ ] Write the form" in plan_path.read_text()
    assert plan.last_todo_index == 0
    assert plan.todo_retry_count == 1
    assert plan.last_exit_code == -1
    assert "Commit failed: git commit failed" in plan.last_error
    assert plan.status == PlanStatus.ACTIVE


def test_dangling_run_phase_is_recovered(tmp_path: Path) -> None:
    _seed_plan(tmp_path, run_phase=RunPhase.LAUNCHING)
    adapter = FakeAdapter(script=[0])
    _make_dispatcher(tmp_path, adapter).run_cycle()
    plan = _plan(tmp_path)
    assert plan.run_phase == RunPhase.IDLE
    assert plan.last_todo_index == 1


ALL_DONE = TWO_TODOS.replace("- [ ]", "- [x]")


def _review_item() -> ReviewItem:
    return ReviewItem(id="h1", author="local", body="Rename the helper", path="src/a.py", line=3)


def test_review_triage_returns_plan_to_active(tmp_path: Path) -> None:
    plan_path = _seed_plan(tmp_path, ALL_DONE, status=PlanStatus.REVIEW)

    def triage(request):
        if "Triage Instructions" not in request.prompt:
            return
        text = plan_path.read_text().replace("## Progress Log", "- [ ] Rename the helper\n\n## Progress Log")
        plan_path.write_text(text)
        result_path = Path(request.working_dir) / WORKTREE_TRIAGE_RESULT_RELPATH
        result_path.write_text(json.dumps({"reply_markdown": "Added a TODO"}))

    adapter = FakeAdapter(script=[0, 0], on_execute=triage)
    review = FakeReview(batches=[[_review_item()]])
    dispatcher = _make_dispatcher(tmp_path, adapter, review=review)

    operations.request_command(StateStore(tmp_path), CommandQueue(tmp_path), "review", "p1")
    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.ACTIVE
    assert plan.poll_once is False
    assert plan.review_state == {"polls": 1}
    assert review.contexts[0].poll_interval_seconds == 0.0
    assert review.responses == ["Added a TODO"]
    assert dispatcher.worktrees.commits == ["[dispatcher] p1: triage"]
    assert "Rename the helper" in adapter.prompts[0]

    dispatcher.run_cycle()
    assert "TODO #3: Rename the helper" in adapter.prompts[1]
    assert _plan(tmp_path).status == PlanStatus.REVIEW


def test_reviewing_without_items_stays_reviewing(tmp_path: Path) -> None:
    _seed_plan(tmp_path, ALL_DONE, status=PlanStatus.REVIEWING)
    adapter = FakeAdapter()
    dispatcher = _make_dispatcher(tmp_path, adapter)
    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.REVIEWING
    assert plan.last_polled_at
    assert adapter.requests == []


def test_triage_failure_blocks(tmp_path: Path) -> None:
    _seed_plan(tmp_path, ALL_DONE, status=PlanStatus.REVIEWING)
    adapter = FakeAdapter(script=[3])
    dispatcher = _make_dispatcher(tmp_path, adapter, review=FakeReview(batches=[[_review_item()]]))
    dispatcher.run_cycle()
    plan = _plan(tmp_path)
    assert plan.status == PlanStatus.BLOCKED
    assert "Triage agent exited with code 3" in plan.last_error
    assert dispatcher.review_provider.responses == []


def test_review_command_rejected_in_cycle_when_status_changed(tmp_path: Path) -> None:
    _seed_plan(tmp_path, status=PlanStatus.PAUSED)
    CommandQueue(tmp_path).enqueue("review", "p1")
    dispatcher = _make_dispatcher(tmp_path, FakeAdapter())
    seen = []
    dispatcher.events.start()
    dispatcher.events.subscribe(seen.append)
    state = dispatcher.run_cycle()
    assert state.plans["p1"].status == PlanStatus.PAUSED
    assert state.control_cursor == 1
    assert [event["type"] for event in seen] == ["command_rejected"]


def test_cycle_refuses_when_lock_held(tmp_path: Path) -> None:
    _seed_plan(tmp_path)
    StateStore(tmp_path).acquire_lock()
    adapter = FakeAdapter(script=[0])
    with pytest.raises(LockHeldError):
        _make_dispatcher(tmp_path, adapter).run_cycle()
    assert adapter.requests == []


def test_run_once_releases_lock_and_records_events(tmp_path: Path) -> None:
    _seed_plan(tmp_path)
    dispatcher = _make_dispatcher(tmp_path, FakeAdapter(script=[0]))
    dispatcher.run(once=True)

    store = StateStore(tmp_path)
    assert store.read_lock() is None
    events = [json.loads(line)["type"] for line in (store.state_dir / "events.ndjson").read_text().splitlines()]
    assert events[0] == "dispatcher_started"
    assert "todo_completed" in events
    assert events[-1] == "dispatcher_stopped"
