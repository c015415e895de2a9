"""Define durable plan state, queued commands and execution results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from .utils import _coerce_int, _coerce_optional_int


class PlanStatus(str, Enum):
    """Lifecycle status of a plan; `blocked` also exists as an orthogonal flag."""

    DRAFT = "draft"
    QUEUED = "queued"
    ACTIVE = "active"
    BLOCKED = "blocked"
    PAUSED = "paused"
    REVIEW = "review"
    REVIEWING = "reviewing"
    TRIAGING = "triaging"
    DONE = "done"


class RunPhase(str, Enum):
    """Where the plan's current agent invocation is in its lifecycle."""

    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    COMPLETED = "completed"
    REAPED = "reaped"


class RunPurpose(str, Enum):
    WORKER = "worker"
    TRIAGE = "triage"


# Statuses the persisted snapshot may contain that this build does not know are
# kept as plain strings so they survive a load/save cycle untouched.
StatusValue = Union[PlanStatus, str]


def _coerce_status(value: Any, default: PlanStatus) -> StatusValue:
    if isinstance(value, PlanStatus):
        return value
    if value is None or value == "":
        return default
    try:
        return PlanStatus(str(value))
    except ValueError:
        return str(value)


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        return default


def status_text(value: StatusValue) -> str:
    return value.value if isinstance(value, PlanStatus) else str(value)


@dataclass
class TodoItem:
    index: int
    text: str
    done: bool = False
    blocked: bool = False

    @property
    def number(self) -> int:
        return self.index + 1

    @property
    def label(self) -> str:
        return f"TODO #{self.number}"


@dataclass
class ParsedPlan:
    """A plan document as returned by a PlanParser."""

    path: Path
    id: str
    title: str = ""
    objective: str = ""
    context: str = ""
    todos: list[TodoItem] = field(default_factory=list)
    progress_log: str = ""
    frontmatter: dict[str, Any] = field(default_factory=dict)
    raw: str = ""

    def next_unchecked(self) -> Optional[TodoItem]:
        for todo in self.todos:
            if not todo.done:
                return todo
        return None

    def todo_at(self, index: Optional[int]) -> Optional[TodoItem]:
        if index is None or index < 0 or index >= len(self.todos):
            return None
        return self.todos[index]


@dataclass
class ExecutionResult:
    """Outcome of `AgentAdapter.execute`.

    Exactly one of `exit_code`, `pid` or `session` is normally set: a session
    or pid means the agent is still running and must be polled later.
    """

    exit_code: Optional[int] = None
    pid: Optional[int] = None
    session: Optional[str] = None
    log_path: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.exit_code is None and (self.pid is not None or self.session is not None)


@dataclass
class QueuedCommand:
    type: str
    plan_id: str
    enqueued_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedCommand":
        return cls(
            type=str(data.get("type") or ""),
            plan_id=str(data.get("plan_id") or ""),
            enqueued_at=data.get("enqueued_at") or data.get("ts"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "plan_id": self.plan_id, "enqueued_at": self.enqueued_at}


@dataclass
class InboxEntry:
    status: StatusValue = PlanStatus.DRAFT
    agent: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InboxEntry":
        extra = dict(data)
        return cls(
            status=_coerce_status(extra.pop("status", None), PlanStatus.DRAFT),
            agent=extra.pop("agent", None),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload["status"] = status_text(self.status)
        if self.agent is not None:
            payload["agent"] = self.agent
        return payload


@dataclass
class PlanState:
    """Durable per-plan state owned by the dispatcher."""

    id: str
    status: StatusValue = PlanStatus.ACTIVE
    worktree: str = ""
    branch: str = ""
    base_branch: str = ""
    plan_relpath: str = ""
    agent: Optional[str] = None
    blocked: bool = False

    last_todo_index: Optional[int] = None
    todo_retry_count: int = 0

    run_phase: RunPhase = RunPhase.IDLE
    run_purpose: Optional[str] = None
    session: Optional[str] = None
    pid: Optional[int] = None
    run_started_at: Optional[str] = None
    # TODO index the live worker run was launched for.
    run_todo_index: Optional[int] = None
    last_exit_code: Optional[int] = None

    last_polled_at: Optional[str] = None
    poll_once: bool = False
    last_error: Optional[str] = None
    change_request: Optional[str] = None
    review_state: dict[str, Any] = field(default_factory=dict)

    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def has_live_run(self) -> bool:
        return self.run_phase in {RunPhase.LAUNCHING, RunPhase.RUNNING} and (
            self.session is not None or self.pid is not None
        )

    def clear_run(self) -> None:
        self.run_phase = RunPhase.IDLE
        self.run_purpose = None
        self.session = None
        self.pid = None
        self.run_started_at = None
        self.run_todo_index = None

    @classmethod
    def from_dict(cls, plan_id: str, data: dict[str, Any]) -> "PlanState":
        """Create a `PlanState` from a persisted dictionary.

        Args:
            plan_id: Key under which the plan is stored.
            data: Raw plan payload from the state snapshot.

        Returns:
            A `PlanState` with unknown keys preserved in `extra`.
        """
        extra = dict(data)

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        review_state = _pop("review_state", None)
        change_request = _pop("change_request", None)
        return cls(
            id=str(_pop("id", None) or plan_id),
            status=_coerce_status(_pop("status", None), PlanStatus.ACTIVE),
            worktree=str(_pop("worktree", "") or ""),
            branch=str(_pop("branch", "") or ""),
            base_branch=str(_pop("base_branch", "") or ""),
            plan_relpath=str(_pop("plan_relpath", "") or ""),
            agent=_pop("agent", None),
            blocked=bool(_pop("blocked", False)),
            last_todo_index=_coerce_optional_int(_pop("last_todo_index", None)),
            todo_retry_count=_coerce_int(_pop("todo_retry_count", 0), 0),
            run_phase=_coerce_enum(RunPhase, _pop("run_phase", None), RunPhase.IDLE),
            run_purpose=_pop("run_purpose", None),
            session=_pop("session", None),
            pid=_coerce_optional_int(_pop("pid", None)),
            run_started_at=_pop("run_started_at", None),
            run_todo_index=_coerce_optional_int(_pop("run_todo_index", None)),
            last_exit_code=_coerce_optional_int(_pop("last_exit_code", None)),
            last_polled_at=_pop("last_polled_at", None),
            poll_once=bool(_pop("poll_once", False)),
            last_error=_pop("last_error", None),
            change_request=str(change_request) if change_request is not None else None,
            review_state=dict(review_state) if isinstance(review_state, dict) else {},
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "status": status_text(self.status),
                "worktree": self.worktree,
                "branch": self.branch,
                "base_branch": self.base_branch,
                "plan_relpath": self.plan_relpath,
                "agent": self.agent,
                "blocked": self.blocked,
                "last_todo_index": self.last_todo_index,
                "todo_retry_count": self.todo_retry_count,
                "run_phase": self.run_phase.value,
                "run_purpose": self.run_purpose,
                "session": self.session,
                "pid": self.pid,
                "run_started_at": self.run_started_at,
                "run_todo_index": self.run_todo_index,
                "last_exit_code": self.last_exit_code,
                "last_polled_at": self.last_polled_at,
                "poll_once": self.poll_once,
                "last_error": self.last_error,
                "change_request": self.change_request,
                "review_state": dict(self.review_state),
            }
        )
        return payload


@dataclass
class GlobalState:
    control_cursor: int = 0
    plans: dict[str, PlanState] = field(default_factory=dict)
    inbox: dict[str, InboxEntry] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GlobalState":
        extra = dict(data)
        raw_plans = extra.pop("plans", None) or {}
        raw_inbox = extra.pop("inbox", None) or {}
        plans = {
            str(plan_id): PlanState.from_dict(str(plan_id), raw)
            for plan_id, raw in raw_plans.items()
            if isinstance(raw, dict)
        }
        inbox = {
            str(plan_id): InboxEntry.from_dict(raw)
            for plan_id, raw in raw_inbox.items()
            if isinstance(raw, dict)
        }
        return cls(
            control_cursor=max(0, _coerce_int(extra.pop("control_cursor", 0), 0)),
            plans=plans,
            inbox=inbox,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload["control_cursor"] = self.control_cursor
        payload["plans"] = {plan_id: ps.to_dict() for plan_id, ps in self.plans.items()}
        payload["inbox"] = {plan_id: entry.to_dict() for plan_id, entry in self.inbox.items()}
        return payload
