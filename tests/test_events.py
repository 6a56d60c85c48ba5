"""Tests for the event bus."""

from bpm_engine.core.events import EventBus, WorkflowEvent, WorkflowEventType


class TestEventBus:
    """Test cases for EventBus subscriptions and delivery."""

    def test_emit_delivers_event(self, event_bus):
        received = []
        event_bus.on(WorkflowEventType.SIMULATION_STARTED, received.append)

        event = event_bus.emit("simulation:started", {"startNodeId": "s"}, source="test")

        assert received == [event]
        assert isinstance(event, WorkflowEvent)
        assert event.type == "simulation:started"
        assert event.payload == {"startNodeId": "s"}
        assert event.source == "test"

    def test_listeners_called_in_subscription_order(self, event_bus):
        order = []
        event_bus.on("custom", lambda event: order.append("first"))
        event_bus.on("custom", lambda event: order.append("second"))

        event_bus.emit("custom")

        assert order == ["first", "second"]

    def test_unsubscribe_callable(self, event_bus):
        received = []
        unsubscribe = event_bus.on("custom", received.append)

        unsubscribe()
        event_bus.emit("custom")

        assert received == []
        assert event_bus.listener_count("custom") == 0

    def test_once(self, event_bus):
        received = []
        event_bus.once("custom", received.append)

        event_bus.emit("custom", 1)
        event_bus.emit("custom", 2)

        assert [event.payload for event in received] == [1]

    def test_off_ignores_unknown_listener(self, event_bus):
        event_bus.off("custom", print)
        assert event_bus.listener_count("custom") == 0

    def test_duplicate_subscription_is_ignored(self, event_bus):
        received = []
        event_bus.on("custom", received.append)
        event_bus.on("custom", received.append)

        event_bus.emit("custom")

        assert len(received) == 1

    def test_listener_exception_is_swallowed(self, event_bus):
        """Test that a failing subscriber does not reach the emitter or other subscribers."""
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        event_bus.on("custom", broken)
        event_bus.on("custom", received.append)

        event = event_bus.emit("custom", "payload")

        assert received == [event]

    def test_clear(self, event_bus):
        event_bus.on("a", print)
        event_bus.on("b", print)

        event_bus.clear("a")
        assert event_bus.event_types() == ["b"]

        event_bus.clear()
        assert event_bus.event_types() == []

    def test_buses_are_independent(self):
        first, second = EventBus(), EventBus()
        received = []
        first.on("custom", received.append)

        second.emit("custom")

        assert received == []
