"""Types shared by review providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, Union


@dataclass(frozen=True)
class ReviewContext:
    repo_root: Path
    worktree: Path
    plan_id: str
    branch: str = ""
    change_request: Optional[str] = None
    poll_interval_seconds: float = 0.0


@dataclass(frozen=True)
class ReviewItem:
    id: str
    author: str
    body: str
    created_at: str = ""
    path: Optional[str] = None
    line: Optional[int] = None
    side: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "body": self.body,
            "created_at": self.created_at,
            "path": self.path,
            "line": self.line,
            "side": self.side,
        }


@dataclass
class PollResult:
    items: list[ReviewItem] = field(default_factory=list)
    state: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RespondResult:
    success: bool
    error: Optional[str] = None


class ReviewProvider(Protocol):
    """Translate an external feedback channel into `ReviewItem`s and back.

    `poll` receives the cursor it returned last time (empty on first call) and
    must return only items not reported before. Failures are raised as
    `ProviderError`.
    """

    name: str

    def poll(self, context: ReviewContext, state: dict[str, Any]) -> PollResult:
        ...

    def respond(self, context: ReviewContext, message: str, related_item_id: Union[str, int, None] = None) -> RespondResult:
        ...
