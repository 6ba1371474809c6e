"""Lifecycle events published by the printcast components.

The poller, orchestrator and managers announce what they decided (job
started, frame captured, encoder repaired, ...) on a shared
:class:`EventBus`.  :class:`~printcast.service.PrintcastService`
subscribes to every event to keep its alert table and exposes the
recent history through its status report.

Nothing on the bus drives a decision.  The poller hands state changes
to the orchestrator through its own ordered callbacks, so a slow or
failing subscriber can never delay or trigger a finalization.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from printcast import parse_int_env

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    PRINTER_STATE_CHANGED = "printer.state_changed"
    PRINTER_TELEMETRY_LOST = "printer.telemetry_lost"

    PRINT_STARTED = "print.started"
    PRINT_ENDED = "print.ended"

    TIMELAPSE_STARTED = "timelapse.started"
    TIMELAPSE_FRAME_CAPTURED = "timelapse.frame_captured"
    TIMELAPSE_FINALIZED = "timelapse.finalized"
    TIMELAPSE_FAILED = "timelapse.failed"

    BROADCAST_STARTED = "broadcast.started"
    BROADCAST_LIVE = "broadcast.live"
    BROADCAST_STOPPED = "broadcast.stopped"
    BROADCAST_DEGRADED = "broadcast.degraded"
    BROADCAST_REPAIRED = "broadcast.repaired"
    BROADCAST_FAILED = "broadcast.failed"

    @property
    def area(self) -> str:
        """Component prefix of the event name, e.g. ``"broadcast"``."""
        return self.value.split(".", 1)[0]


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "source": self.source,
            "timestamp": self.timestamp,
            "data": self.data,
        }


EventHandler = Callable[[Event], None]


class EventBus:
    """Synchronous, thread-safe publish/subscribe with a bounded history.

    Handlers run in the publishing thread after the bus lock is released.
    A handler that raises is logged and skipped.  Subscribing to ``None``
    receives every event.

    The history keeps the last *max_history* events (default from
    ``PRINTCAST_EVENT_HISTORY``, else 1000).
    """

    def __init__(self, max_history: int | None = None) -> None:
        if max_history is None:
            max_history = parse_int_env("PRINTCAST_EVENT_HISTORY", 1000)
        self._lock = threading.Lock()
        self._handlers: dict[EventType | None, list[EventHandler]] = {}
        self._history: deque[Event] = deque(maxlen=max(1, max_history))

    def subscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)

    def unsubscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        """Remove *handler*; unknown handlers are ignored."""
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event_type: EventType, data: dict[str, Any] | None = None, source: str = "") -> Event:
        event = Event(type=event_type, data=data or {}, source=source)
        with self._lock:
            self._history.append(event)
            handlers = self._handlers.get(event_type, []) + self._handlers.get(None, [])

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, event_type.value)
        return event

    def recent_events(self, event_type: EventType | None = None, limit: int = 50) -> list[Event]:
        """Newest first, optionally restricted to one type."""
        with self._lock:
            events = list(self._history)
        events.reverse()
        if event_type is not None:
            events = [e for e in events if e.type is event_type]
        return events[:limit]


def emit(bus: EventBus | None, event_type: EventType, data: dict[str, Any], source: str) -> None:
    """Publish on *bus* when one is configured; a no-op otherwise."""
    if bus is not None:
        bus.publish(event_type, data, source=source)
