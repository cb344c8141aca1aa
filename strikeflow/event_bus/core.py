"""
In-process event bus for pipeline, decision and position events

Publishing is non-blocking and never raises: events land in a per-symbol
buffer and a dispatcher thread (or an explicit drain) delivers them to
subscribers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from collections import defaultdict, deque
import threading
import logging
import uuid

from strikeflow.signals.schemas import utcnow

LOG = logging.getLogger(__name__)


class EventType(Enum):
    """Event types in system"""
    # Signal pipeline
    SIGNAL_RECEIVED = "signal_received"
    SIGNAL_REJECTED = "signal_rejected"

    # Decision engine
    DECISION_MADE = "decision_made"
    DEGRADED_MODE = "degraded_mode"

    # Position lifecycle
    POSITION_OPENED = "position_opened"
    POSITION_UPDATED = "position_updated"
    POSITION_CLOSED = "position_closed"
    EXIT_ALERT = "exit_alert"


@dataclass
class Event:
    """Bus event"""
    event_type: EventType
    symbol: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            'event_id': self.event_id,
            'event_type': self.event_type.value,
            'symbol': self.symbol,
            'data': dict(self.data),
            'timestamp': self.timestamp.isoformat(),
        }


class EventBus:
    """Thread-safe event bus with per-symbol buffers"""

    def __init__(self, buffer_size: int = 10000, history_size: int = 500):
        self.buffer_size = buffer_size
        self._symbol_buffers: Dict[str, deque] = {}
        self._global_buffer: deque = deque()
        self._history: deque = deque(maxlen=history_size)
        self._subscribers: Dict[EventType, List[dict]] = defaultdict(list)
        self._running = False
        self._dispatcher_thread: Optional[threading.Thread] = None
        self._wakeup = threading.Event()
        self._lock = threading.RLock()
        self._events_published = 0
        self._events_dispatched = 0
        self._events_dropped = 0
        self._callback_errors = 0

    def start(self):
        """Start dispatcher"""
        if self._running:
            return
        self._running = True
        self._dispatcher_thread = threading.Thread(
            target=self._dispatch_loop,
            name="EventBusDispatcher",
            daemon=True
        )
        self._dispatcher_thread.start()
        LOG.info("EventBus started")

    def stop(self):
        """Stop dispatcher and deliver what is left"""
        if not self._running:
            return
        self._running = False
        self._wakeup.set()
        if self._dispatcher_thread:
            self._dispatcher_thread.join(timeout=5.0)
        self.dispatch_pending()
        LOG.info("EventBus stopped")

    def publish(self, event: Event) -> bool:
        """
        Queue an event for delivery.

        Returns False when the event was dropped (buffer full or malformed).
        Never raises.
        """
        try:
            with self._lock:
                self._events_published += 1
                if event.symbol:
                    buffer = self._symbol_buffers.setdefault(event.symbol, deque())
                else:
                    buffer = self._global_buffer

                if len(buffer) >= self.buffer_size:
                    self._events_dropped += 1
                    return False

                buffer.append(event)
                self._history.append(event)
            self._wakeup.set()
            return True
        except Exception as e:
            LOG.warning(f"Failed to publish event: {e}")
            return False

    def subscribe(
        self,
        event_type: EventType,
        callback: Callable[[Event], None],
        symbols: Optional[List[str]] = None,
    ) -> int:
        """Subscribe to events, optionally restricted to symbols"""
        with self._lock:
            self._subscribers[event_type].append({
                'callback': callback,
                'symbols': set(symbols) if symbols else None,
            })
            return len(self._subscribers[event_type]) - 1

    def dispatch_pending(self) -> int:
        """Deliver all buffered events on the calling thread"""
        with self._lock:
            events = list(self._global_buffer)
            self._global_buffer.clear()
            for buffer in self._symbol_buffers.values():
                events.extend(buffer)
                buffer.clear()

        for event in events:
            self._dispatch_event(event)
        return len(events)

    def recent_events(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        with self._lock:
            events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.event_type is event_type]
        return events[-limit:]

    def _dispatch_loop(self):
        """Background dispatcher"""
        while self._running:
            self._wakeup.wait(0.05)
            self._wakeup.clear()
            self.dispatch_pending()

    def _dispatch_event(self, event: Event):
        with self._lock:
            subscribers = list(self._subscribers.get(event.event_type, []))
        for sub in subscribers:
            if sub['symbols'] is not None and event.symbol not in sub['symbols']:
                continue
            try:
                sub['callback'](event)
                with self._lock:
                    self._events_dispatched += 1
            except Exception as e:
                with self._lock:
                    self._callback_errors += 1
                LOG.error(f"Subscriber callback failed for {event.event_type.value}: {e}")

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            total_buffer = len(self._global_buffer)
            for buf in self._symbol_buffers.values():
                total_buffer += len(buf)

            return {
                'events_published': self._events_published,
                'events_dispatched': self._events_dispatched,
                'events_dropped': self._events_dropped,
                'callback_errors': self._callback_errors,
                'buffer_depth': total_buffer,
                'symbol_buffers': len(self._symbol_buffers),
                'running': self._running
            }


_global_bus: Optional[EventBus] = None
_global_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get global event bus (started on first use)"""
    global _global_bus
    with _global_lock:
        if _global_bus is None:
            _global_bus = EventBus()
            _global_bus.start()
        return _global_bus
