"""Runtime services shared by the engine and the server."""

from flowdesigner.runtime.event_bus import EventBus, EventType, FlowEvent

__all__ = ["EventBus", "EventType", "FlowEvent"]
