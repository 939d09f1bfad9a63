"""
Repeating timers for the position refresh, metric refresh and auto-step tick.

Every callback runs to completion before the next tick of the same timer is
scheduled, so ticks never overlap. Cancellation is cooperative: a tick that
is already running finishes, no further ticks start.
"""

from abc import ABC, abstractmethod
from threading import Event, RLock, Thread, current_thread
from typing import Callable, List, Optional
import logging

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class TimerHandle:
    """Handle returned by a scheduler; ``cancel()`` stops further ticks."""

    def __init__(self, name: str, period_s: float):
        self.name = name
        self.period_s = period_s
        self.thread: Optional[Thread] = None
        self._cancelled = Event()

    def cancel(self) -> None:
        if not self._cancelled.is_set():
            logger.debug(f"Timer '{self.name}' cancelled")
        self._cancelled.set()

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the timer's worker thread to exit.

        Returns:
            True if no thread is left running. A handle joined from its own
            callback returns False immediately.
        """
        if self.thread is None:
            return True
        if self.thread is current_thread():
            return False
        self.thread.join(timeout)
        return not self.thread.is_alive()


def _run_callback(handle: TimerHandle, callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception as e:
        logger.exception(f"Timer '{handle.name}' callback failed: {e}")


class Scheduler(ABC):
    """Creates repeating timers."""

    @abstractmethod
    def schedule_repeating(self, period_s: float, callback: Callable[[], None], name: str = "timer") -> TimerHandle:
        pass

    def close(self, timeout: float = 2.0) -> None:
        """Cancel every timer this scheduler created."""
        pass


class ThreadTimerScheduler(Scheduler):
    """
    One daemon thread per timer.

    All callbacks of this scheduler run while holding ``lock``; pass the
    controller's lock so timer handlers and public calls never interleave.
    ``close()`` cancels every timer and waits for running callbacks to return.
    """

    def __init__(self, lock: Optional[RLock] = None):
        self.lock = lock or RLock()
        self._handles: List[TimerHandle] = []

    def schedule_repeating(self, period_s: float, callback: Callable[[], None], name: str = "timer") -> TimerHandle:
        if period_s <= 0:
            raise ValueError("period_s must be > 0")
        handle = TimerHandle(name, period_s)

        def loop():
            while not handle._cancelled.wait(period_s):
                with self.lock:
                    if handle._cancelled.is_set():
                        break
                    _run_callback(handle, callback)

        handle.thread = Thread(target=loop, name=f"zstage-{name}", daemon=True)
        self._handles = [h for h in self._handles if h.active] + [handle]
        handle.thread.start()
        logger.debug(f"Timer '{name}' started with period {period_s:.3f} s")
        return handle

    def close(self, timeout: float = 2.0) -> None:
        handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()
        for handle in handles:
            if not handle.join(timeout):
                logger.warning(f"Timer '{handle.name}' thread still running after {timeout:.1f} s")


class _ManualEntry:
    def __init__(self, handle: TimerHandle, callback: Callable[[], None], next_due: float, order: int):
        self.handle = handle
        self.callback = callback
        self.next_due = next_due
        self.order = order


class ManualScheduler(Scheduler):
    """
    Deterministic scheduler driven by ``advance()``.

    Used by tests and by hosts that own their own event loop: call
    ``advance(elapsed)`` from the loop and due callbacks fire in time order.
    """

    def __init__(self):
        self.now = 0.0
        self._entries: List[_ManualEntry] = []
        self._counter = 0

    def schedule_repeating(self, period_s: float, callback: Callable[[], None], name: str = "timer") -> TimerHandle:
        if period_s <= 0:
            raise ValueError("period_s must be > 0")
        handle = TimerHandle(name, period_s)
        self._counter += 1
        self._entries.append(_ManualEntry(handle, callback, self.now + period_s, self._counter))
        return handle

    @property
    def active_timers(self) -> List[TimerHandle]:
        return [entry.handle for entry in self._entries if entry.handle.active]

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing every tick that falls due. Returns the tick count."""
        target = self.now + seconds
        fired = 0
        while True:
            self._entries = [entry for entry in self._entries if entry.handle.active]
            due = [entry for entry in self._entries if entry.next_due <= target + _EPSILON]
            if not due:
                break
            entry = min(due, key=lambda item: (item.next_due, item.order))
            self.now = max(self.now, entry.next_due)
            entry.next_due += entry.handle.period_s
            _run_callback(entry.handle, entry.callback)
            fired += 1
        self.now = target
        return fired

    def close(self, timeout: float = 2.0) -> None:
        for entry in self._entries:
            entry.handle.cancel()
        self._entries = []
