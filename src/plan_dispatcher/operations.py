"""Operator commands.

Commands that are safe between cycles (queue, block, unblock, resume,
archive) edit the snapshot directly under the state mutex. Commands that
must interrupt in-flight work (stop, review, kill, poll) are validated here
and appended to the command queue for the running dispatcher.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from . import fsm
from .constants import COMMAND_REVIEW, QUEUED_COMMAND_TYPES
from .control import CommandQueue
from .errors import InvalidTransitionError, PlanNotFoundError
from .io_utils import _atomic_write_json
from .models import GlobalState, InboxEntry, PlanState, PlanStatus, QueuedCommand, status_text
from .state import StateStore
from .utils import _now_iso

ARCHIVE_DIR = "archive"


def _require_plan(state: GlobalState, plan_id: str) -> PlanState:
    plan = state.plans.get(plan_id)
    if plan is None:
        raise PlanNotFoundError(plan_id)
    return plan


def queue_plan(store: StateStore, plan_id: str, agent: Optional[str] = None) -> InboxEntry:
    """Mark an inbox plan as ready for the dispatcher to pick up."""
    if not store.inbox_path(plan_id).exists():
        raise PlanNotFoundError(plan_id, where="inbox")
    with store.transaction() as state:
        if plan_id in state.plans:
            raise InvalidTransitionError(plan_id, "queue", status_text(state.plans[plan_id].status), "inbox draft")
        entry = state.inbox.get(plan_id) or InboxEntry()
        entry.status = PlanStatus.QUEUED
        if agent:
            entry.agent = agent
        entry.extra.pop("last_error", None)
        state.inbox[plan_id] = entry
    logger.info("Plan {} queued", plan_id)
    return entry


def block_plan(store: StateStore, plan_id: str, reason: Optional[str] = None) -> PlanState:
    with store.transaction() as state:
        plan = _require_plan(state, plan_id)
        fsm.block(plan, reason or "Blocked by operator")
    return plan


def unblock_plan(store: StateStore, plan_id: str) -> PlanState:
    with store.transaction() as state:
        plan = _require_plan(state, plan_id)
        fsm.unblock(plan)
    return plan


def resume_plan(store: StateStore, plan_id: str) -> bool:
    """Resume a paused plan. Returns False when the plan was not paused."""
    with store.transaction() as state:
        plan = _require_plan(state, plan_id)
        return fsm.resume(plan)


def complete_plan(store: StateStore, plan_id: str) -> PlanState:
    with store.transaction() as state:
        plan = _require_plan(state, plan_id)
        if plan.has_live_run:
            raise InvalidTransitionError(plan_id, "complete", status_text(plan.status), "no running agent")
        fsm.mark_done(plan)
    return plan


def archive_plan(store: StateStore, plan_id: str) -> Path:
    """Remove a plan from the snapshot, keeping a copy under `.dispatcher/archive/`.

    The working tree and branch are left in place.
    """
    with store.transaction() as state:
        plan = _require_plan(state, plan_id)
        if plan.has_live_run:
            raise InvalidTransitionError(plan_id, "archive", status_text(plan.status), "no running agent")
        archive_path = store.state_dir / ARCHIVE_DIR / f"{plan_id}.json"
        payload = plan.to_dict()
        payload["archived_at"] = _now_iso()
        _atomic_write_json(archive_path, payload)
        del state.plans[plan_id]
    logger.info("Plan {} archived to {}", plan_id, archive_path)
    return archive_path


def request_command(store: StateStore, queue: CommandQueue, command_type: str, plan_id: str) -> QueuedCommand:
    """Validate and enqueue a command for the running dispatcher.

    Raises:
        PlanNotFoundError: If no plan has that id.
        InvalidTransitionError: For `review` on a plan whose status is not `review`.
    """
    if command_type not in QUEUED_COMMAND_TYPES:
        raise ValueError(f"Unsupported command type '{command_type}'")
    state = store.load_state()
    plan = _require_plan(state, plan_id)
    if command_type == COMMAND_REVIEW and plan.status != PlanStatus.REVIEW:
        raise InvalidTransitionError(plan_id, "review", status_text(plan.status), PlanStatus.REVIEW.value)
    if fsm.is_terminal(plan):
        raise InvalidTransitionError(plan_id, command_type, status_text(plan.status), "not done")
    return queue.enqueue(command_type, plan_id)
