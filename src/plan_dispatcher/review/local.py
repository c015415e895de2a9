"""Review provider backed by a `review.md` file inside the working tree.

Reviewers add unchecked items under a `## ready` heading::

    ## ready
    - [ ] Rename this helper, it shadows a builtin
      file: src/app/util.py
      line: 42

Items need text, a file and a line. Each item is reported once, keyed by a
hash of its content; checking it off or deleting it forgets the hash.
"""

from __future__ import annotations

import hashlib
import re
import time
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from ..constants import WORKTREE_LOCAL_DIR, WORKTREE_REVIEW_RELPATH
from ..errors import ProviderError
from ..utils import _now_iso
from .base import PollResult, RespondResult, ReviewContext, ReviewItem

_HEADER_RE = re.compile(r"^##\s+(\w+)", re.IGNORECASE)
_ITEM_RE = re.compile(r"^-\s+\[([ xX])\]\s+(.+)")
_FILE_RE = re.compile(r"^file:\s*(.+)", re.IGNORECASE)
_LINE_RE = re.compile(r"^line:\s*(\d+)", re.IGNORECASE)
_SIDE_RE = re.compile(r"^side:\s*(left|right)", re.IGNORECASE)

REPLIES_FILE = "review-replies.md"


def _finalize(item: dict[str, Any], text_lines: list[str]) -> Optional[dict[str, Any]]:
    text = " ".join(text_lines).strip()
    if not item.get("file") or item.get("line") is None or not text:
        return None
    return {
        "text": text,
        "file": item["file"],
        "line": item["line"],
        "side": item.get("side") or "right",
    }


def parse_review_md(content: str) -> list[dict[str, Any]]:
    """Return the unchecked, complete items of the `## ready` section."""
    items: list[dict[str, Any]] = []
    in_ready = False
    current: Optional[dict[str, Any]] = None
    text_lines: list[str] = []

    def _flush() -> None:
        if current is not None and in_ready:
            final = _finalize(current, text_lines)
            if final:
                items.append(final)

    for line in content.splitlines():
        header = _HEADER_RE.match(line)
        if header:
            _flush()
            current, text_lines = None, []
            in_ready = header.group(1).lower() == "ready"
            continue
        if not in_ready:
            continue

        item = _ITEM_RE.match(line)
        if item:
            _flush()
            if item.group(1).lower() == "x":
                current, text_lines = None, []
            else:
                current, text_lines = {}, [item.group(2).strip()]
            continue

        if current is None or not line[:1].isspace():
            continue
        stripped = line.strip()
        if match := _FILE_RE.match(stripped):
            current["file"] = match.group(1).strip()
        elif match := _LINE_RE.match(stripped):
            current["line"] = int(match.group(1))
        elif match := _SIDE_RE.match(stripped):
            current["side"] = match.group(1).lower()
        elif stripped and ":" not in stripped:
            text_lines.append(stripped)

    _flush()
    return items


def item_hash(item: dict[str, Any]) -> str:
    data = f"{item['text']}|{item['file']}|{item['line']}|{item['side']}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


class LocalReviewProvider:
    name = "local"

    def __init__(self, clock=time.time) -> None:
        self._clock = clock

    def poll(self, context: ReviewContext, state: dict[str, Any]) -> PollResult:
        state = dict(state or {})
        now = self._clock()
        last_poll = float(state.get("last_poll_time") or 0)
        if context.poll_interval_seconds and now - last_poll < context.poll_interval_seconds:
            return PollResult(items=[], state=state)

        review_path = Path(context.worktree) / WORKTREE_REVIEW_RELPATH
        if not review_path.exists():
            return PollResult(items=[], state={"last_poll_time": now, "processed_hashes": []})
        try:
            content = review_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ProviderError(f"Unable to read {review_path}: {exc}") from exc

        parsed = parse_review_md(content)
        current = {item_hash(item) for item in parsed}
        processed = {h for h in state.get("processed_hashes") or [] if h in current}

        new_items: list[ReviewItem] = []
        for item in parsed:
            digest = item_hash(item)
            if digest in processed:
                continue
            processed.add(digest)
            new_items.append(
                ReviewItem(
                    id=digest,
                    author="local",
                    body=item["text"],
                    created_at=_now_iso(),
                    path=item["file"],
                    line=item["line"],
                    side=item["side"],
                )
            )
        if new_items:
            logger.info("Found {} new local review item(s) for {}", len(new_items), context.plan_id)
        return PollResult(items=new_items, state={"last_poll_time": now, "processed_hashes": sorted(processed)})

    def respond(self, context: ReviewContext, message: str, related_item_id: Union[str, int, None] = None) -> RespondResult:
        path = Path(context.worktree) / WORKTREE_LOCAL_DIR / REPLIES_FILE
        heading = f"## {_now_iso()}" + (f" ({related_item_id})" if related_item_id is not None else "")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as handle:
                handle.write(f"{heading}\n\n{message.strip()}\n\n")
        except OSError as exc:
            return RespondResult(success=False, error=str(exc))
        return RespondResult(success=True)
