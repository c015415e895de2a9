"""Agent CLI integrations (codex, claude, gemini, opencode, amp, manual)."""

from .base import AgentAdapter, CliAgentAdapter, ExecuteRequest, SessionDescriptor
from .config import AgentSelection, resolve_agent_for_role
from .registry import AgentRegistry, default_registry, get_adapter, get_agent_names, register_adapter

__all__ = [
    "AgentAdapter",
    "AgentRegistry",
    "AgentSelection",
    "CliAgentAdapter",
    "ExecuteRequest",
    "SessionDescriptor",
    "default_registry",
    "get_adapter",
    "get_agent_names",
    "register_adapter",
    "resolve_agent_for_role",
]
