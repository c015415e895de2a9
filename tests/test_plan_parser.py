from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from plan_dispatcher.errors import ProviderError
from plan_dispatcher.plan_parser import MarkdownPlanParser, extract_section, split_frontmatter

PLAN = """---
id: add-login
agent: claude
---
# Add login

## Objective
Let users sign in.

## Context
Run `pytest tests/test_auth.py`.

## TODO
- [x] Add the route
- [ ] Write the form
- [ ] Hook up sessions

## Progress Log
- started
"""


def _write(tmp_path: Path, text: str, name: str = "plan.md") -> Path:
    path = tmp_path / name
    path.write_text(text)
    return path


def test_parse_sections_and_frontmatter(tmp_path: Path) -> None:
    plan = MarkdownPlanParser().parse(_write(tmp_path, PLAN))
    assert plan.id == "add-login"
    assert plan.title == "Add login"
    assert plan.frontmatter["agent"] == "claude"
    assert plan.objective == "Let users sign in."
    assert "pytest" in plan.context
    assert plan.progress_log == "- started"
    assert [t.text for t in plan.todos] == ["Add the route", "Write the form", "Hook up sessions"]
    assert [t.done for t in plan.todos] == [True, False, False]


def test_next_unchecked_and_labels(tmp_path: Path) -> None:
    plan = MarkdownPlanParser().parse(_write(tmp_path, PLAN))
    todo = plan.next_unchecked()
    assert todo.index == 1
    assert todo.label == "TODO #2"
    assert plan.todo_at(5) is None


def test_id_falls_back_to_file_stem(tmp_path: Path) -> None:
    plan = MarkdownPlanParser().parse(_write(tmp_path, "# Title\n\n## TODO\n- [ ] one\n", "fix-bug.md"))
    assert plan.id == "fix-bug"
    assert plan.frontmatter == {}


def test_blocked_marks(tmp_path: Path) -> None:
    text = "## TODO\n- [b] waiting\n- [!] also waiting\n- [ ] free\n"
    plan = MarkdownPlanParser().parse(_write(tmp_path, text))
    assert [t.blocked for t in plan.todos] == [True, True, False]
    assert not any(t.done for t in plan.todos)


def test_lines_outside_todo_section_are_ignored(tmp_path: Path) -> None:
    text = "## Objective\n- [ ] not a task\n\n## TODO\n- [ ] real task\n"
    plan = MarkdownPlanParser().parse(_write(tmp_path, text))
    assert [t.text for t in plan.todos] == ["real task"]


def test_mark_todo_done_rewrites_only_that_item(tmp_path: Path) -> None:
    path = _write(tmp_path, PLAN)
    parser = MarkdownPlanParser()
    assert parser.mark_todo_done(path, 1) is True
    assert parser.mark_todo_done(path, 1) is False
    assert parser.mark_todo_done(path, 9) is False

    plan = parser.parse(path)
    assert [t.done for t in plan.todos] == [True, True, False]
    assert "## Progress Log\n- started" in path.read_text()


def test_invalid_frontmatter_raises() -> None:
    with pytest.raises(ProviderError):
        split_frontmatter("---\nid: [unclosed\n---\nbody\n")


def test_extract_section_missing_returns_empty() -> None:
    assert extract_section("## TODO\n- [ ] x\n", "Context") == ""
