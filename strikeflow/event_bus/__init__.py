"""Event bus for signal, decision and position lifecycle events"""

from strikeflow.event_bus.core import EventBus, Event, EventType, get_event_bus

__all__ = ['EventBus', 'Event', 'EventType', 'get_event_bus']
