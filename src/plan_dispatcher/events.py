"""Process-wide observability stream for dispatcher activity.

The hub keeps a bounded ring buffer of recent events and fans each published
event out to explicit subscribers. `start()` is called by the dispatcher on
startup; nothing is recorded before that. When a sink path is configured,
events are also appended to `events.ndjson` so `plan-dispatcher events` can
read them from another process.
"""

from __future__ import annotations

import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .constants import DEFAULT_EVENT_BUFFER_SIZE
from .io_utils import _append_event
from .utils import _now_iso

Subscriber = Callable[[dict[str, Any]], None]


class EventHub:
    def __init__(self, capacity: int = DEFAULT_EVENT_BUFFER_SIZE) -> None:
        self._capacity = capacity
        self._buffer: deque[dict[str, Any]] = deque(maxlen=capacity)
        self._subscribers: dict[int, Subscriber] = {}
        self._counter = 0
        self._started = False
        self._sink: Optional[Path] = None
        self._lock = threading.Lock()

    @property
    def started(self) -> bool:
        return self._started

    def start(self, sink: Optional[Path] = None, capacity: Optional[int] = None) -> None:
        """Begin recording, clearing anything left over from a previous run."""
        with self._lock:
            if capacity is not None:
                self._capacity = capacity
            self._buffer = deque(maxlen=self._capacity)
            self._sink = sink
            self._started = True

    def reset(self) -> None:
        with self._lock:
            self._buffer = deque(maxlen=self._capacity)
            self._subscribers.clear()
            self._sink = None
            self._started = False

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback`; returns a function that unregisters it."""
        with self._lock:
            self._counter += 1
            token = self._counter
            self._subscribers[token] = callback

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return _unsubscribe

    def publish(self, event_type: str, plan_id: Optional[str] = None, **payload: Any) -> Optional[dict[str, Any]]:
        if not self._started:
            return None
        event: dict[str, Any] = {"type": event_type, "timestamp": _now_iso()}
        if plan_id is not None:
            event["plan_id"] = plan_id
        event.update(payload)

        with self._lock:
            self._buffer.append(event)
            subscribers = list(self._subscribers.values())
            sink = self._sink

        if sink is not None:
            try:
                _append_event(sink, event)
            except OSError as exc:
                logger.warning("Unable to append event to {}: {}", sink, exc)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:
                logger.warning("Event subscriber failed on {}: {}", event_type, exc)
        return event

    def recent(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        with self._lock:
            events = list(self._buffer)
        if limit is not None:
            return events[-limit:] if limit > 0 else []
        return events


hub = EventHub()
