"""Load optional dispatcher configuration from `.dispatcher/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_AGENT,
    DEFAULT_BASE_BRANCH,
    DEFAULT_MAX_ACTIVE_PLANS,
    DEFAULT_MAX_TODO_RETRIES,
    DEFAULT_MISSING_MARKER_EXIT_CODE,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_REVIEW_POLL_INTERVAL_SECONDS,
    DEFAULT_REVIEW_PROVIDER,
    DEFAULT_SESSION_PREFIX,
    STATE_DIR_NAME,
    WORKTREES_DIR,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error


@dataclass(frozen=True)
class AgentRoleConfig:
    agent: Optional[str] = None
    model: Optional[str] = None


@dataclass(frozen=True)
class DispatcherConfig:
    default_agent: str = DEFAULT_AGENT
    roles: dict[str, AgentRoleConfig] = field(default_factory=dict)
    base_branch: str = DEFAULT_BASE_BRANCH
    worktrees_dir: str = f"{STATE_DIR_NAME}/{WORKTREES_DIR}"
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_todo_retries: int = DEFAULT_MAX_TODO_RETRIES
    max_active_plans: int = DEFAULT_MAX_ACTIVE_PLANS
    use_tmux: bool = True
    missing_marker_exit_code: int = DEFAULT_MISSING_MARKER_EXIT_CODE
    review_provider: str = DEFAULT_REVIEW_PROVIDER
    review_poll_interval_seconds: float = DEFAULT_REVIEW_POLL_INTERVAL_SECONDS
    session_prefix: str = DEFAULT_SESSION_PREFIX

    def resolve_worktrees_dir(self, project_dir: Path) -> Path:
        path = Path(self.worktrees_dir).expanduser()
        return path if path.is_absolute() else (project_dir / path).resolve()


def _config_path(project_dir: Path) -> Path:
    state_dir = project_dir / STATE_DIR_NAME
    yaml_path = state_dir / CONFIG_FILE
    json_path = state_dir / "config.json"
    if not yaml_path.exists() and json_path.exists():
        return json_path
    return yaml_path


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_number(raw: dict[str, Any], key: str, default: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive number, got {value!r}")
    return float(value)


def _positive_int(raw: dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive integer, got {value!r}")
    return value


def _parse_roles(agents_cfg: dict[str, Any]) -> dict[str, AgentRoleConfig]:
    roles: dict[str, AgentRoleConfig] = {}
    for role, raw in agents_cfg.items():
        if role == "default":
            continue
        if isinstance(raw, str):
            roles[str(role)] = AgentRoleConfig(agent=raw.strip() or None)
            continue
        item = _as_dict(raw)
        if not item:
            raise ConfigError(f"agents.{role} must be an agent name or a mapping")
        agent = str(item.get("agent") or "").strip() or None
        model = str(item.get("model") or "").strip() or None
        roles[str(role)] = AgentRoleConfig(agent=agent, model=model)
    return roles


def parse_config(raw: dict[str, Any]) -> DispatcherConfig:
    """Validate a raw config mapping.

    Raises:
        ConfigError: If a known key has the wrong type or an out-of-range value.
    """
    agents_cfg = raw.get("agents", {})
    if agents_cfg is not None and not isinstance(agents_cfg, dict):
        raise ConfigError("'agents' must be a mapping")
    agents_cfg = _as_dict(agents_cfg)
    default_agent = str(agents_cfg.get("default") or DEFAULT_AGENT).strip()

    missing_marker = raw.get("missing_marker_exit_code", DEFAULT_MISSING_MARKER_EXIT_CODE)
    if isinstance(missing_marker, bool) or not isinstance(missing_marker, int):
        raise ConfigError(f"'missing_marker_exit_code' must be an integer, got {missing_marker!r}")

    use_tmux = raw.get("use_tmux", True)
    if not isinstance(use_tmux, bool):
        raise ConfigError(f"'use_tmux' must be true or false, got {use_tmux!r}")

    review_cfg = _as_dict(raw.get("review"))
    review_provider = str(review_cfg.get("provider") or DEFAULT_REVIEW_PROVIDER).strip()

    return DispatcherConfig(
        default_agent=default_agent,
        roles=_parse_roles(agents_cfg),
        base_branch=str(raw.get("base_branch") or DEFAULT_BASE_BRANCH).strip(),
        worktrees_dir=str(raw.get("worktrees_dir") or f"{STATE_DIR_NAME}/{WORKTREES_DIR}"),
        poll_interval_seconds=_positive_number(raw, "poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS),
        max_todo_retries=_positive_int(raw, "max_todo_retries", DEFAULT_MAX_TODO_RETRIES),
        max_active_plans=_positive_int(raw, "max_active_plans", DEFAULT_MAX_ACTIVE_PLANS),
        use_tmux=use_tmux,
        missing_marker_exit_code=missing_marker,
        review_provider=review_provider,
        review_poll_interval_seconds=_positive_number(
            review_cfg, "poll_interval_seconds", DEFAULT_REVIEW_POLL_INTERVAL_SECONDS
        ),
        session_prefix=str(raw.get("session_prefix") or DEFAULT_SESSION_PREFIX).strip(),
    )


def load_dispatcher_config(project_dir: Path) -> DispatcherConfig:
    """Load the optional config file, falling back to defaults when it is absent.

    Raises:
        ConfigError: If the file exists but cannot be parsed or validated.
    """
    path = _config_path(Path(project_dir).resolve())
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigError(f"Invalid config: {err}")
    return parse_config(data)
