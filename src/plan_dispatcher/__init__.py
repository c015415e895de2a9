"""Provide the public `plan_dispatcher` package exports."""

from __future__ import annotations

from .dispatcher import Dispatcher
from .state import StateStore

__all__ = ["Dispatcher", "StateStore"]
