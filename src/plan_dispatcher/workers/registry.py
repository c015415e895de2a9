"""Name → adapter registry. The dispatcher only ever sees `AgentAdapter`."""

from __future__ import annotations

from typing import Iterable, Optional

from ..errors import UnknownAgentError
from .adapters import BUILTIN_ADAPTERS
from .base import AgentAdapter


class AgentRegistry:
    def __init__(self, adapters: Optional[Iterable[AgentAdapter]] = None) -> None:
        self._adapters: dict[str, AgentAdapter] = {}
        for adapter in adapters if adapters is not None else BUILTIN_ADAPTERS:
            self.register(adapter)

    def register(self, adapter: AgentAdapter, *, replace: bool = False) -> None:
        if not adapter.name:
            raise ValueError("Agent adapter must define a non-empty name")
        if adapter.name in self._adapters and not replace:
            raise ValueError(f"Agent '{adapter.name}' is already registered")
        self._adapters[adapter.name] = adapter

    def get(self, name: Optional[str]) -> AgentAdapter:
        adapter = self._adapters.get(str(name or ""))
        if adapter is None:
            raise UnknownAgentError(str(name), list(self._adapters))
        return adapter

    def names(self) -> list[str]:
        return list(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters


_default_registry = AgentRegistry()


def default_registry() -> AgentRegistry:
    return _default_registry


def get_adapter(name: Optional[str]) -> AgentAdapter:
    """Return the adapter registered under `name`.

    Raises:
        UnknownAgentError: If no integration has that name.
    """
    return _default_registry.get(name)


def get_agent_names() -> list[str]:
    return _default_registry.names()


def register_adapter(adapter: AgentAdapter, *, replace: bool = False) -> None:
    _default_registry.register(adapter, replace=replace)
