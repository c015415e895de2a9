"""Review providers: turn external feedback into triage work."""

from __future__ import annotations

from typing import Callable

from ..errors import ConfigError
from .base import PollResult, RespondResult, ReviewContext, ReviewItem, ReviewProvider
from .local import LocalReviewProvider

_PROVIDERS: dict[str, Callable[[], ReviewProvider]] = {
    "local": LocalReviewProvider,
}


def register_review_provider(name: str, factory: Callable[[], ReviewProvider]) -> None:
    _PROVIDERS[name] = factory


def get_review_provider(name: str) -> ReviewProvider:
    factory = _PROVIDERS.get(name)
    if factory is None:
        raise ConfigError(f"Unknown review provider: {name} (available: {', '.join(sorted(_PROVIDERS))})")
    return factory()


__all__ = [
    "LocalReviewProvider",
    "PollResult",
    "RespondResult",
    "ReviewContext",
    "ReviewItem",
    "ReviewProvider",
    "get_review_provider",
    "register_review_provider",
]
