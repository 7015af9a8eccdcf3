"""Notifications emitted by the session loop for the console/TUI layer."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Literal, Mapping

from ...plan.model import utcnow

__all__ = ["LoopEvent", "LoopEventKind", "EventListener", "EventBus", "InMemoryEventSink"]

LOGGER = logging.getLogger(__name__)

LoopEventKind = Literal["transition", "tool_batch", "task_outcome", "plan_persisted", "error"]


@dataclass(slots=True, frozen=True)
class LoopEvent:
    """A single loop notification.

    Attributes:
        kind: What happened.
        session_id: Session the loop belongs to.
        previous: State name before a transition.
        current: State name after a transition (or the state the event occurred in).
        plan_text: Serialized plan, set on the ``Summarizing -> Idle`` transition
            and on ``plan_persisted``.
        detail: Structured payload for the event kind.
        timestamp: When the event was emitted.
    """

    kind: LoopEventKind
    session_id: str
    previous: str | None = None
    current: str | None = None
    plan_text: str | None = None
    detail: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "session_id": self.session_id,
            "previous": self.previous,
            "current": self.current,
            "plan_text": self.plan_text,
            "detail": dict(self.detail),
            "timestamp": self.timestamp.isoformat(),
        }


EventListener = Callable[[LoopEvent], None]


class EventBus:
    """Fan-out of loop events to registered listeners.

    Listener failures are logged and never reach the loop.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def emit(self, event: LoopEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # listeners must not break the loop
                LOGGER.exception("Loop event listener failed for %s event", event.kind)


class InMemoryEventSink:
    """Simple ring-buffer event sink for local inspection and tests."""

    def __init__(self, capacity: int = 500) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[LoopEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __call__(self, event: LoopEvent) -> None:
        self.record(event)

    def record(self, event: LoopEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[LoopEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def of_kind(self, kind: LoopEventKind) -> list[LoopEvent]:
        return [event for event in self.tail() if event.kind == kind]

    def transitions(self) -> list[tuple[str | None, str | None]]:
        return [(event.previous, event.current) for event in self.of_kind("transition")]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
