"""Unit tests for :mod:`planloop.ai.orchestration.events`."""

from __future__ import annotations

from planloop.ai.orchestration import EventBus, InMemoryEventSink, LoopEvent


def _event(kind="transition", previous="Idle", current="Planning", **extra) -> LoopEvent:
    return LoopEvent(kind=kind, session_id="s1", previous=previous, current=current, **extra)


class TestLoopEvent:
    """Tests for the event record."""

    def test_to_dict_is_json_friendly(self) -> None:
        """Timestamps are rendered as ISO strings and details copied."""
        event = _event(detail={"version": 2}, plan_text="---")
        payload = event.to_dict()

        assert payload["kind"] == "transition"
        assert payload["detail"] == {"version": 2}
        assert payload["plan_text"] == "---"
        assert isinstance(payload["timestamp"], str)


class TestEventBus:
    """Tests for listener fan-out."""

    def test_emit_reaches_every_listener_in_order(self) -> None:
        """Listeners are called in subscription order."""
        bus = EventBus()
        calls: list[str] = []
        bus.subscribe(lambda event: calls.append("first"))
        bus.subscribe(lambda event: calls.append("second"))

        bus.emit(_event())

        assert calls == ["first", "second"]

    def test_subscribe_is_idempotent(self) -> None:
        """The same listener is only registered once."""
        bus = EventBus()
        sink = InMemoryEventSink()
        bus.subscribe(sink)
        bus.subscribe(sink)

        bus.emit(_event())

        assert len(sink) == 1

    def test_unsubscribe_unknown_listener_is_ignored(self) -> None:
        """Removing a listener that was never added does nothing."""
        bus = EventBus()
        bus.unsubscribe(lambda event: None)

    def test_failing_listener_does_not_block_others(self, caplog) -> None:
        """A listener exception is logged and the remaining listeners still run."""
        bus = EventBus()
        sink = InMemoryEventSink()

        def broken(event: LoopEvent) -> None:
            raise RuntimeError("listener bug")

        bus.subscribe(broken)
        bus.subscribe(sink)

        bus.emit(_event(kind="error"))

        assert len(sink) == 1
        assert "listener failed" in caplog.text


class TestInMemoryEventSink:
    """Tests for the ring-buffer sink."""

    def test_capacity_bounds_the_buffer(self) -> None:
        """Only the newest events are kept."""
        sink = InMemoryEventSink(capacity=10)
        for index in range(25):
            sink(_event(detail={"n": index}))

        assert len(sink) == 10
        assert sink.tail(1)[0].detail["n"] == 24
        assert sink.tail()[0].detail["n"] == 15

    def test_filters_by_kind(self) -> None:
        """Transitions are reported as (previous, current) pairs."""
        sink = InMemoryEventSink()
        sink(_event())
        sink(_event(kind="tool_batch", previous=None, current="Executing"))
        sink(_event(previous="Planning", current="Executing"))

        assert sink.transitions() == [("Idle", "Planning"), ("Planning", "Executing")]
        assert len(sink.of_kind("tool_batch")) == 1
