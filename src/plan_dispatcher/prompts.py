"""Render the prompts handed to worker and triage agents."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Protocol, Sequence

from .constants import WORKTREE_TRIAGE_RESULT_RELPATH
from .models import ParsedPlan, TodoItem
from .review.base import ReviewItem

PROMPTS_DIR = "prompts"
_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class PromptRenderer(Protocol):
    def render_worker_prompt(self, repo_root: Path, plan_relpath: str, plan: ParsedPlan, todo: TodoItem) -> str:
        ...

    def render_triage_prompt(
        self, repo_root: Path, plan_relpath: str, plan: ParsedPlan, items: Sequence[ReviewItem]
    ) -> str:
        ...


DEFAULT_WORKER_TEMPLATE = """# Worker Instructions

You are implementing exactly ONE task from this plan.

## Your Task
{{current_todo}}

## Rules
1. Implement only the specified task.
2. Update the plan file at `{{plan_path}}`: add a Progress Log entry describing what you did.
3. Run tests if the Context section names them.
4. If you are stuck, change the task's checkbox to `- [b]` and explain why in the Progress Log.
5. Exit when complete. Exit non-zero if the task could not be completed.

---

# Plan

{{plan}}
"""

DEFAULT_TRIAGE_TEMPLATE = """# Triage Instructions

Review feedback has arrived for this plan. Turn it into work.

## Feedback
{{feedback}}

## Rules
1. For each actionable item, append a new unchecked TODO (`- [ ] ...`) to the TODO section of `{{plan_path}}`.
2. Do not implement the changes yourself.
3. Write `{{triage_result_path}}` containing JSON: {"reply_markdown": "<short reply to the reviewer>"}.
4. Exit non-zero if the feedback cannot be triaged.

---

# Plan

{{plan}}
"""


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute `{{name}}` placeholders; unknown names render empty."""
    return _PLACEHOLDER_RE.sub(lambda match: values.get(match.group(1), ""), template)


def _load_template(repo_root: Path, name: str, default: str) -> str:
    path = Path(repo_root) / PROMPTS_DIR / f"{name}.md"
    if path.exists():
        return path.read_text(encoding="utf-8")
    return default


def format_todo(todo: TodoItem) -> str:
    return f"{todo.label}: {todo.text}"


def _format_feedback(items: Sequence[ReviewItem]) -> str:
    blocks: list[str] = []
    for item in items:
        location = ""
        if item.path:
            location = f" ({item.path}{f':{item.line}' if item.line is not None else ''})"
        blocks.append(f"- [{item.author}]{location} {item.body}")
    return "\n".join(blocks) or "(none)"


class TemplatePromptRenderer:
    """Render from `prompts/<name>.md` in the repository, or the built-in template."""

    def render_worker_prompt(self, repo_root: Path, plan_relpath: str, plan: ParsedPlan, todo: TodoItem) -> str:
        template = _load_template(repo_root, "worker", DEFAULT_WORKER_TEMPLATE)
        return render_template(
            template,
            {
                "current_todo": format_todo(todo),
                "plan": plan.raw,
                "plan_path": plan_relpath,
                "plan_id": plan.id,
            },
        )

    def render_triage_prompt(
        self, repo_root: Path, plan_relpath: str, plan: ParsedPlan, items: Sequence[ReviewItem]
    ) -> str:
        template = _load_template(repo_root, "triage", DEFAULT_TRIAGE_TEMPLATE)
        return render_template(
            template,
            {
                "feedback": _format_feedback(items),
                "plan": plan.raw,
                "plan_path": plan_relpath,
                "plan_id": plan.id,
                "triage_result_path": WORKTREE_TRIAGE_RESULT_RELPATH,
            },
        )
