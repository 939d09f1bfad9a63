"""
Change notifications published by the stage controller.

Events carry no payload; subscribers re-read whatever state they need from
the controller. Handlers run synchronously, on the thread that committed
the change.

Usage:
    bus = EventBus()
    bus.subscribe(ControllerEvent.POSITION_CHANGED, lambda event: redraw())
    bus.emit(ControllerEvent.POSITION_CHANGED)
"""

from contextlib import contextmanager
from enum import Enum
from threading import RLock
from typing import Callable, Dict, Iterator, List
import logging

logger = logging.getLogger(__name__)


class ControllerEvent(Enum):
    STATUS_CHANGED = "StatusChanged"
    POSITION_CHANGED = "PositionChanged"
    METRIC_CHANGED = "MetricChanged"
    AUTO_STEP_COMPLETE = "AutoStepComplete"


Handler = Callable[[ControllerEvent], None]


class EventBus:
    """
    Typed callback lists for the four controller events.

    Handler exceptions are logged but never reach the code that emitted the
    event. Inside ``coalesced()`` emissions are collected and each distinct
    event fires once when the outermost block exits.
    """

    def __init__(self):
        self._subscribers: Dict[ControllerEvent, List[Handler]] = {event: [] for event in ControllerEvent}
        self._lock = RLock()
        self._coalesce_depth = 0
        self._pending: List[ControllerEvent] = []

    def subscribe(self, event: ControllerEvent, handler: Handler) -> None:
        with self._lock:
            self._subscribers[event].append(handler)

    def unsubscribe(self, event: ControllerEvent, handler: Handler) -> None:
        with self._lock:
            try:
                self._subscribers[event].remove(handler)
            except ValueError:
                pass  # Handler not in list

    def emit(self, event: ControllerEvent) -> None:
        with self._lock:
            if self._coalesce_depth > 0:
                if event not in self._pending:
                    self._pending.append(event)
                return
            handlers = list(self._subscribers[event])

        logger.debug(f"Emitting {event.value} to {len(handlers)} handler(s)")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.exception(f"Handler {handler} failed for {event.value}: {e}")

    @contextmanager
    def coalesced(self) -> Iterator[None]:
        """Defer and de-duplicate emissions until the block exits."""
        with self._lock:
            self._coalesce_depth += 1
        try:
            yield
        finally:
            with self._lock:
                self._coalesce_depth -= 1
                if self._coalesce_depth > 0:
                    pending = []
                else:
                    pending, self._pending = self._pending, []
            for event in pending:
                self.emit(event)

    def clear(self) -> None:
        """Remove all subscriptions."""
        with self._lock:
            for handlers in self._subscribers.values():
                handlers.clear()
