"""Parse plan documents: YAML frontmatter followed by markdown sections.

A plan looks like::

    ---
    id: add-login
    agent: claude
    ---
    # Add login

    ## Objective
    ...

    ## TODO
    - [ ] Write the form
    - [x] Add the route
    - [b] Wire up SSO (blocked: waiting on credentials)

`- [x]` marks a TODO done; `- [b]` or `- [!]` marks it blocked, which blocks
the whole plan until an operator intervenes.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Protocol

import yaml

from .errors import ProviderError
from .io_utils import _atomic_write_text
from .models import ParsedPlan, TodoItem

_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_CHECKBOX_RE = re.compile(r"^- \[(.)\] (.+)$")
_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_DONE_MARKS = {"x", "X"}
_BLOCKED_MARKS = {"b", "B", "!"}


class PlanParser(Protocol):
    def parse(self, path: Path) -> ParsedPlan:
        ...

    def mark_todo_done(self, path: Path, index: int) -> bool:
        ...


def split_frontmatter(raw: str) -> tuple[dict[str, Any], str]:
    match = _FRONTMATTER_RE.match(raw)
    if not match:
        return {}, raw
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise ProviderError(f"Invalid plan frontmatter: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ProviderError("Invalid plan frontmatter: expected a mapping")
    return data, raw[match.end():]


def extract_section(content: str, heading: str) -> str:
    pattern = re.compile(
        rf"^##[ \t]+{re.escape(heading)}[ \t]*\r?\n(.*?)(?=^##[ \t]|\Z)",
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    match = pattern.search(content)
    return match.group(1).strip() if match else ""


def _section_span(lines: list[str], heading: str) -> tuple[int, int]:
    start = None
    for idx, line in enumerate(lines):
        if start is None:
            if re.match(rf"^##[ \t]+{re.escape(heading)}[ \t]*$", line.strip(), re.IGNORECASE):
                start = idx + 1
            continue
        if line.startswith("## "):
            return start, idx
    if start is None:
        return -1, -1
    return start, len(lines)


def parse_todos(section: str) -> list[TodoItem]:
    todos: list[TodoItem] = []
    for line in section.splitlines():
        match = _CHECKBOX_RE.match(line.rstrip())
        if not match:
            continue
        mark, text = match.group(1), match.group(2).strip()
        todos.append(
            TodoItem(
                index=len(todos),
                text=text,
                done=mark in _DONE_MARKS,
                blocked=mark in _BLOCKED_MARKS,
            )
        )
    return todos


class MarkdownPlanParser:
    """Default `PlanParser` for markdown plans with YAML frontmatter."""

    def parse(self, path: Path) -> ParsedPlan:
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ProviderError(f"Unable to read plan {path}: {exc}") from exc
        return self.parse_text(raw, path)

    def parse_text(self, raw: str, path: Path) -> ParsedPlan:
        frontmatter, body = split_frontmatter(raw)
        title_match = _TITLE_RE.search(body)
        title = str(frontmatter.get("title") or (title_match.group(1).strip() if title_match else ""))
        return ParsedPlan(
            path=path,
            id=str(frontmatter.get("id") or path.stem),
            title=title,
            objective=extract_section(body, "Objective"),
            context=extract_section(body, "Context"),
            todos=parse_todos(extract_section(body, "TODO")),
            progress_log=extract_section(body, "Progress Log"),
            frontmatter=frontmatter,
            raw=raw,
        )

    def mark_todo_done(self, path: Path, index: int) -> bool:
        """Check off TODO `index` in place. Returns False if it was already done or missing."""
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ProviderError(f"Unable to read plan {path}: {exc}") from exc

        lines = raw.split("\n")
        start, end = _section_span(lines, "TODO")
        if start < 0:
            return False
        seen = -1
        for idx in range(start, end):
            match = _CHECKBOX_RE.match(lines[idx].rstrip())
            if not match:
                continue
            seen += 1
            if seen != index:
                continue
            if match.group(1) in _DONE_MARKS:
                return False
            lines[idx] = f"- [x] {match.group(2)}"
            try:
                _atomic_write_text(path, "\n".join(lines))
            except OSError as exc:
                raise ProviderError(f"Unable to update plan {path}: {exc}") from exc
            return True
        return False
