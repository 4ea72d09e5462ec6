"""Tests for the event emitter."""

from __future__ import annotations

from groupchat.core.events import ChatEvent, EventEmitter


class TestEventEmitter:
    def test_handlers_receive_args(self):
        events = EventEmitter()
        received = []
        events.on(ChatEvent.MESSAGE, lambda *args: received.append(args))

        events.emit(ChatEvent.MESSAGE, "chat1", "entry")
        assert received == [("chat1", "entry")]

    def test_events_are_separate(self):
        events = EventEmitter()
        received = []
        events.on(ChatEvent.PARTICIPANTS_CHANGED, lambda *args: received.append(args))
        events.emit(ChatEvent.MESSAGE, "chat1", "entry")
        assert received == []

    def test_unsubscribe(self):
        events = EventEmitter()
        received = []
        unsubscribe = events.on(ChatEvent.MESSAGE, lambda *args: received.append(args))
        unsubscribe()
        unsubscribe()
        events.emit(ChatEvent.MESSAGE, "chat1", "entry")
        assert received == []

    def test_failing_handler_does_not_stop_others(self, caplog):
        events = EventEmitter()
        received = []

        def broken(*args):
            raise RuntimeError("ui went away")

        events.on(ChatEvent.MESSAGE, broken)
        events.on(ChatEvent.MESSAGE, lambda *args: received.append(args))

        events.emit(ChatEvent.MESSAGE, "chat1", "entry")
        assert received == [("chat1", "entry")]
        assert "ui went away" in caplog.text

    def test_event_values(self):
        assert ChatEvent("participants_changed") is ChatEvent.PARTICIPANTS_CHANGED
