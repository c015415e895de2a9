"""Plan status transitions and the per-TODO retry/advance policy.

Every function mutates the `PlanState` it is given and leaves persistence to
the caller. Operator-facing transitions raise `InvalidTransitionError` when
their precondition does not hold, except `resume`, which is a no-op on a plan
that is not paused.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import InvalidTransitionError
from .models import PlanState, PlanStatus, status_text

# Statuses in which the dispatcher may launch a worker for the next TODO.
DISPATCHABLE_STATUSES = {PlanStatus.ACTIVE}


class RunOutcome(str, Enum):
    ADVANCED = "advanced"
    RETRY = "retry"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class OutcomeDecision:
    outcome: RunOutcome
    todo_index: int
    retry_count: int


def is_terminal(plan: PlanState) -> bool:
    return plan.status == PlanStatus.DONE


def _reject(plan: PlanState, action: str, expected: str) -> InvalidTransitionError:
    return InvalidTransitionError(plan.id, action, status_text(plan.status), expected)


def _ensure_not_done(plan: PlanState, action: str) -> None:
    if is_terminal(plan):
        raise _reject(plan, action, "not done")


def _set_blocked(plan: PlanState, error: Optional[str]) -> None:
    plan.status = PlanStatus.BLOCKED
    plan.blocked = True
    if error:
        plan.last_error = error


def _set_active(plan: PlanState) -> None:
    plan.status = PlanStatus.ACTIVE
    plan.blocked = False


def is_dispatchable(plan: PlanState) -> bool:
    return plan.status in DISPATCHABLE_STATUSES and not plan.blocked and not plan.has_live_run


def block(plan: PlanState, reason: Optional[str] = None) -> None:
    _ensure_not_done(plan, "block")
    _set_blocked(plan, reason)


def unblock(plan: PlanState) -> None:
    """Return a blocked plan to `active`, retrying its TODO from a clean slate."""
    if plan.status != PlanStatus.BLOCKED and not plan.blocked:
        raise _reject(plan, "unblock", PlanStatus.BLOCKED.value)
    _set_active(plan)
    plan.todo_retry_count = 0
    plan.last_todo_index = None
    plan.last_error = None


def resume(plan: PlanState) -> bool:
    """Resume a paused plan. Returns False (and changes nothing) otherwise."""
    if plan.status != PlanStatus.PAUSED:
        return False
    plan.status = PlanStatus.ACTIVE
    plan.last_error = None
    return True


def pause(plan: PlanState) -> None:
    """Advisory stop: the plan is not relaunched, a running agent keeps running."""
    _ensure_not_done(plan, "stop")
    plan.status = PlanStatus.PAUSED


def mark_review(plan: PlanState) -> None:
    plan.status = PlanStatus.REVIEW
    plan.last_error = None


def start_review(plan: PlanState) -> None:
    if plan.status != PlanStatus.REVIEW:
        raise _reject(plan, "review", PlanStatus.REVIEW.value)
    plan.status = PlanStatus.REVIEWING


def begin_triage(plan: PlanState) -> None:
    if plan.status != PlanStatus.REVIEWING:
        raise _reject(plan, "triage", PlanStatus.REVIEWING.value)
    plan.status = PlanStatus.TRIAGING


def finish_triage(plan: PlanState, exit_code: int, error: Optional[str] = None) -> None:
    if plan.status != PlanStatus.TRIAGING:
        raise _reject(plan, "finish triage of", PlanStatus.TRIAGING.value)
    if exit_code == 0:
        _set_active(plan)
        plan.last_error = None
        plan.todo_retry_count = 0
        return
    _set_blocked(plan, error or f"Triage agent exited with code {exit_code}")


def mark_done(plan: PlanState) -> None:
    plan.status = PlanStatus.DONE
    plan.blocked = False
    plan.clear_run()


def select_todo(plan: PlanState, todo_index: int) -> None:
    """Record the TODO about to be dispatched, resetting retries when it changed."""
    if plan.last_todo_index != todo_index:
        plan.last_todo_index = todo_index
        plan.todo_retry_count = 0


def apply_run_outcome(
    plan: PlanState,
    todo_index: int,
    exit_code: int,
    *,
    max_retries: int,
    error_detail: Optional[str] = None,
) -> OutcomeDecision:
    """Apply the result of one worker run on TODO `todo_index`.

    Exit 0 advances past the TODO and resets the retry counter. A nonzero exit
    counts one failed attempt; once `max_retries` consecutive attempts have
    failed the plan is blocked with `last_error` set, otherwise the same TODO
    is dispatched again on the next cycle.
    """
    plan.last_exit_code = exit_code
    if exit_code == 0:
        plan.last_todo_index = todo_index + 1
        plan.todo_retry_count = 0
        plan.last_error = None
        return OutcomeDecision(RunOutcome.ADVANCED, plan.last_todo_index, 0)

    plan.last_todo_index = todo_index
    plan.todo_retry_count += 1
    message = f"TODO #{todo_index + 1} failed with exit code {exit_code}"
    if error_detail:
        message = f"{message}\n{error_detail}"
    if plan.todo_retry_count >= max_retries:
        _set_blocked(
            plan,
            f"{message}\nGave up after {plan.todo_retry_count} attempt(s)",
        )
        return OutcomeDecision(RunOutcome.BLOCKED, todo_index, plan.todo_retry_count)
    plan.last_error = message
    return OutcomeDecision(RunOutcome.RETRY, todo_index, plan.todo_retry_count)
