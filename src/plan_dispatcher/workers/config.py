"""Resolve which agent and model handle a given role for a plan."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config import DispatcherConfig


@dataclass(frozen=True)
class AgentSelection:
    agent: str
    model: Optional[str] = None


def resolve_agent_for_role(
    config: DispatcherConfig,
    role: str,
    plan_agent: Optional[str] = None,
) -> AgentSelection:
    """Pick the agent for `role`.

    The plan's own agent wins for the `worker` role; otherwise the role's
    configured agent, then the global default. The role's model applies only
    when the selected agent is the role's configured one.
    """
    role_cfg = config.roles.get(role)
    configured = role_cfg.agent if role_cfg else None
    if role == "worker" and plan_agent:
        agent = plan_agent
    else:
        agent = configured or config.default_agent
    model = role_cfg.model if role_cfg and (configured is None or configured == agent) else None
    return AgentSelection(agent=agent, model=model)
