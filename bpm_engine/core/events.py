"""Event bus used by the engines to publish observable side effects."""

import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from pydantic import BaseModel, Field

from .logging import get_logger

logger = get_logger(__name__)


class WorkflowEventType(str, Enum):
    """Event names published by the workflow core."""
    WORKFLOW_LOADED = "workflow:loaded"
    WORKFLOW_VALIDATED = "workflow:validated"
    REGISTRY_ITEM_REGISTERED = "registry:item:registered"
    REGISTRY_ITEM_UNREGISTERED = "registry:item:unregistered"
    SIMULATION_STARTED = "simulation:started"
    SIMULATION_STEPPED = "simulation:stepped"
    SIMULATION_COMPLETED = "simulation:completed"
    SIMULATION_STUCK = "simulation:stuck"
    SIMULATION_HALTED = "simulation:halted"
    SIMULATION_STOPPED = "simulation:stopped"


class WorkflowEvent(BaseModel):
    """Envelope delivered to every listener."""
    type: str = Field(..., description="Event name")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Emission time")
    payload: Any = Field(None, description="Event specific data")
    source: Optional[str] = Field(None, description="Component that emitted the event")


EventListener = Callable[[WorkflowEvent], Any]


class EventBus:
    """Synchronous publish/subscribe channel.

    Listener exceptions are logged and swallowed so that a failing subscriber
    never propagates into the emitting engine.
    """

    def __init__(self):
        self._listeners: Dict[str, List[EventListener]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(event_type) -> str:
        return event_type.value if isinstance(event_type, WorkflowEventType) else str(event_type)

    def on(self, event_type, listener: EventListener) -> Callable[[], None]:
        """
        Subscribe to an event.

        Args:
            event_type: Event name or WorkflowEventType
            listener: Callable receiving a WorkflowEvent

        Returns:
            Zero-argument callable that removes the subscription
        """
        key = self._key(event_type)
        with self._lock:
            listeners = self._listeners.setdefault(key, [])
            if listener not in listeners:
                listeners.append(listener)
        return lambda: self.off(key, listener)

    def once(self, event_type, listener: EventListener) -> Callable[[], None]:
        """Subscribe to the next occurrence of an event only."""
        key = self._key(event_type)

        def once_listener(event: WorkflowEvent):
            self.off(key, once_listener)
            return listener(event)

        return self.on(key, once_listener)

    def off(self, event_type, listener: EventListener) -> None:
        """Remove a listener; unknown listeners are ignored."""
        key = self._key(event_type)
        with self._lock:
            listeners = self._listeners.get(key)
            if not listeners:
                return
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                del self._listeners[key]

    def emit(self, event_type, payload: Any = None, source: Optional[str] = None) -> WorkflowEvent:
        """
        Deliver an event to every current listener, in subscription order.

        Args:
            event_type: Event name or WorkflowEventType
            payload: Event data
            source: Optional emitter name

        Returns:
            The delivered event
        """
        key = self._key(event_type)
        event = WorkflowEvent(type=key, payload=payload, source=source)

        with self._lock:
            listeners = list(self._listeners.get(key, []))

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in event listener for {key}: {e}", exc_info=True)

        return event

    def clear(self, event_type=None) -> None:
        """Remove the listeners of one event type, or of all types."""
        with self._lock:
            if event_type is None:
                self._listeners.clear()
            else:
                self._listeners.pop(self._key(event_type), None)

    def listener_count(self, event_type) -> int:
        with self._lock:
            return len(self._listeners.get(self._key(event_type), []))

    def event_types(self) -> List[str]:
        with self._lock:
            return list(self._listeners.keys())
