from __future__ import annotations

import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from plan_dispatcher.events import EventHub


def test_nothing_recorded_before_start() -> None:
    hub = EventHub()
    assert hub.publish("run_started", "p1") is None
    assert hub.recent() == []


def test_ring_buffer_keeps_most_recent() -> None:
    hub = EventHub(capacity=3)
    hub.start()
    for idx in range(5):
        hub.publish("tick", n=idx)
    assert [event["n"] for event in hub.recent()] == [2, 3, 4]
    assert [event["n"] for event in hub.recent(limit=1)] == [4]


def test_subscribe_and_unsubscribe() -> None:
    hub = EventHub()
    hub.start()
    seen = []
    unsubscribe = hub.subscribe(seen.append)
    hub.publish("plan_blocked", "p1", reason="x")
    unsubscribe()
    hub.publish("plan_blocked", "p2")
    assert len(seen) == 1
    assert seen[0]["type"] == "plan_blocked"
    assert seen[0]["plan_id"] == "p1"
    assert seen[0]["reason"] == "x"
    assert seen[0]["timestamp"]


def test_failing_subscriber_does_not_break_publish() -> None:
    hub = EventHub()
    hub.start()

    def boom(event):
        raise RuntimeError("subscriber bug")

    hub.subscribe(boom)
    assert hub.publish("tick") is not None
    assert len(hub.recent()) == 1


def test_sink_receives_events(tmp_path: Path) -> None:
    sink = tmp_path / "events.ndjson"
    hub = EventHub()
    hub.start(sink=sink)
    hub.publish("run_started", "p1", todo=1)
    lines = sink.read_text().splitlines()
    assert json.loads(lines[0])["type"] == "run_started"


def test_start_clears_previous_run_and_reset_stops() -> None:
    hub = EventHub()
    hub.start()
    hub.publish("tick")
    hub.start()
    assert hub.recent() == []
    hub.reset()
    assert not hub.started
    assert hub.publish("tick") is None
