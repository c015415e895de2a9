"""Append-only queue of operator commands consumed by the dispatcher."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import CONTROL_FILE, QUEUED_COMMAND_TYPES, STATE_DIR_NAME
from .io_utils import _append_jsonl
from .models import QueuedCommand
from .utils import _now_iso


class CommandQueue:
    """JSONL log of commands that must be observed inside a running cycle.

    The consumer's cursor counts complete entries (newline-terminated lines),
    so a line still being appended by another process is never consumed half
    written. Malformed entries are skipped but still advance the cursor.
    """

    def __init__(self, project_dir: Path, path: Optional[Path] = None) -> None:
        self.path = path or Path(project_dir) / STATE_DIR_NAME / CONTROL_FILE

    def enqueue(self, command_type: str, plan_id: str) -> QueuedCommand:
        if command_type not in QUEUED_COMMAND_TYPES:
            raise ValueError(
                f"Unsupported command type '{command_type}' "
                f"(expected one of: {', '.join(sorted(QUEUED_COMMAND_TYPES))})"
            )
        command = QueuedCommand(type=command_type, plan_id=plan_id, enqueued_at=_now_iso())
        _append_jsonl(self.path, command.to_dict())
        return command

    def _complete_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        text = self.path.read_text(encoding="utf-8")
        lines = text.split("\n")
        # The last element is either "" (file ends with newline) or a partial line.
        return lines[:-1]

    def size(self) -> int:
        return len(self._complete_lines())

    def consume(self, cursor: int) -> tuple[list[QueuedCommand], int]:
        """Return entries after `cursor` and the cursor to persist once applied.

        Args:
            cursor: Number of entries already processed.

        Returns:
            A tuple of `(commands, new_cursor)`; `new_cursor` is never below `cursor`.
        """
        cursor = max(0, int(cursor))
        lines = self._complete_lines()
        if len(lines) <= cursor:
            return [], cursor

        commands: list[QueuedCommand] = []
        for offset, line in enumerate(lines[cursor:], start=cursor):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed control entry #{}: {!r}", offset + 1, line[:120])
                continue
            if not isinstance(raw, dict):
                logger.warning("Skipping non-object control entry #{}", offset + 1)
                continue
            commands.append(QueuedCommand.from_dict(raw))
        return commands, len(lines)

    def has_pending(self, cursor: int) -> bool:
        return self.size() > cursor
