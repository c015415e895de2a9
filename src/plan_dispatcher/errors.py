"""Error taxonomy shared by the dispatcher, its collaborators and the CLI."""

from __future__ import annotations

from typing import Optional


class DispatcherError(Exception):
    """Base class for every error the dispatcher raises on purpose."""


class ConfigError(DispatcherError):
    """The configuration file exists but cannot be used."""


class LockHeldError(DispatcherError):
    """Another live dispatcher already holds the singleton lock."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"Dispatcher already running (PID {pid})")
        self.pid = pid


class StateIOError(DispatcherError):
    """Reading or writing the state snapshot or lock file failed."""


class UnknownAgentError(DispatcherError):
    def __init__(self, name: str, available: Optional[list[str]] = None) -> None:
        message = f"Unknown agent: {name}"
        if available:
            message += f" (available: {', '.join(sorted(available))})"
        super().__init__(message)
        self.name = name


class SpawnError(DispatcherError):
    """A detached agent process could not be started."""


class SessionCreateError(SpawnError):
    """A detached terminal session could not be created."""


class ProviderError(DispatcherError):
    """A collaborator (worktree, review provider, plan parser) failed."""


class PlanNotFoundError(DispatcherError):
    def __init__(self, plan_id: str, where: str = "active plans") -> None:
        super().__init__(f"Plan {plan_id} not found in {where}")
        self.plan_id = plan_id


class InvalidTransitionError(DispatcherError):
    """An operator command does not apply to the plan's current status."""

    def __init__(self, plan_id: str, action: str, current: str, expected: str) -> None:
        super().__init__(
            f"Cannot {action} plan {plan_id}: status is '{current}', expected '{expected}'"
        )
        self.plan_id = plan_id
        self.action = action
        self.current = current
        self.expected = expected
