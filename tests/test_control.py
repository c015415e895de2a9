"""Test the operator command queue and its cursor."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from plan_dispatcher.control import CommandQueue


def test_cursor_counts_processed_entries(tmp_path: Path) -> None:
    queue = CommandQueue(tmp_path)
    queue.enqueue("stop", "a")
    queue.enqueue("review", "b")
    queue.enqueue("stop", "c")

    commands, cursor = queue.consume(0)
    assert [(c.type, c.plan_id) for c in commands] == [("stop", "a"), ("review", "b"), ("stop", "c")]
    assert cursor == 3

    again, same = queue.consume(cursor)
    assert again == []
    assert same == 3


def test_consume_from_middle_preserves_order(tmp_path: Path) -> None:
    queue = CommandQueue(tmp_path)
    for plan_id in ("a", "b", "c", "d"):
        queue.enqueue("poll", plan_id)
    commands, cursor = queue.consume(2)
    assert [c.plan_id for c in commands] == ["c", "d"]
    assert cursor == 4


def test_cursor_never_moves_backward(tmp_path: Path) -> None:
    queue = CommandQueue(tmp_path)
    queue.enqueue("stop", "a")
    commands, cursor = queue.consume(10)
    assert commands == []
    assert cursor == 10


def test_malformed_entries_advance_cursor(tmp_path: Path) -> None:
    queue = CommandQueue(tmp_path)
    queue.path.parent.mkdir(parents=True)
    queue.path.write_text("not json\n" + json.dumps([1, 2]) + "\n")
    queue.enqueue("stop", "a")

    commands, cursor = queue.consume(0)
    assert [c.plan_id for c in commands] == ["a"]
    assert cursor == 3


def test_partial_trailing_line_is_not_consumed(tmp_path: Path) -> None:
    queue = CommandQueue(tmp_path)
    queue.enqueue("stop", "a")
    with open(queue.path, "a", encoding="utf-8") as handle:
        handle.write('{"type": "stop", "plan_')

    commands, cursor = queue.consume(0)
    assert [c.plan_id for c in commands] == ["a"]
    assert cursor == 1
    assert queue.has_pending(0)
    assert not queue.has_pending(1)


def test_enqueue_rejects_unknown_type(tmp_path: Path) -> None:
    queue = CommandQueue(tmp_path)
    with pytest.raises(ValueError):
        queue.enqueue("explode", "a")
    assert not queue.path.exists()


def test_entry_format(tmp_path: Path) -> None:
    queue = CommandQueue(tmp_path)
    queue.enqueue("kill", "p1")
    entry = json.loads(queue.path.read_text().splitlines()[0])
    assert entry["type"] == "kill"
    assert entry["plan_id"] == "p1"
    assert entry["enqueued_at"]
