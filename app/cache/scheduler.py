"""
Clock and timer abstraction used by the cache.

Stores, fetchers and the orchestrator never call time.time() or time.sleep()
directly. They depend on a Scheduler so tests can drive time by hand with
VirtualScheduler instead of waiting on the wall clock.
"""
import threading
import time
import logging
from typing import Callable, List, Protocol

logger = logging.getLogger("cache.scheduler")


class TimerHandle(Protocol):
    """A cancellable repeating timer."""

    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Source of time, sleeping and interval ticks."""

    def now(self) -> float:
        ...

    def sleep(self, seconds: float) -> None:
        ...

    def call_every(self, interval: float, fn: Callable[[], None]) -> TimerHandle:
        ...


class _RepeatingTimer:
    """Daemon thread that calls fn every interval seconds until cancelled."""

    def __init__(self, interval: float, fn: Callable[[], None], name: str):
        self._interval = interval
        self._fn = fn
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._fn()
            except Exception as e:
                logger.error(f"Scheduled task failed: {e}")

    def cancel(self) -> None:
        self._stopped.set()


class SystemScheduler:
    """Wall-clock scheduler backed by time.time and daemon threads."""

    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def call_every(self, interval: float, fn: Callable[[], None]) -> TimerHandle:
        return _RepeatingTimer(interval, fn, name="cache-timer")


class _VirtualTimer:
    def __init__(self, scheduler: "VirtualScheduler", interval: float, fn: Callable[[], None]):
        self.interval = interval
        self.fn = fn
        self.next_fire = scheduler.now() + interval
        self.cancelled = False
        self._scheduler = scheduler

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler:
    """
    Manually advanced scheduler for tests.

    Time only moves when advance() or sleep() is called. Interval callbacks
    registered with call_every() fire synchronously, in due order, while time
    is advanced past their deadlines. Every sleep() is recorded.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._lock = threading.RLock()
        self._timers: List[_VirtualTimer] = []
        self.sleeps: List[float] = []

    def now(self) -> float:
        with self._lock:
            return self._now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def call_every(self, interval: float, fn: Callable[[], None]) -> TimerHandle:
        timer = _VirtualTimer(self, interval, fn)
        with self._lock:
            self._timers.append(timer)
        return timer

    @property
    def active_timers(self) -> int:
        with self._lock:
            return sum(1 for t in self._timers if not t.cancelled)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing any interval callbacks that come due."""
        with self._lock:
            target = self._now + max(seconds, 0)
        while True:
            with self._lock:
                due = [t for t in self._timers if not t.cancelled and t.next_fire <= target]
                if not due:
                    self._now = target
                    return
                timer = min(due, key=lambda t: t.next_fire)
                self._now = timer.next_fire
                timer.next_fire += timer.interval
            try:
                timer.fn()
            except Exception as e:
                logger.error(f"Scheduled task failed: {e}")
