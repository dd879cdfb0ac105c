"""
Optional sharing of in-flight upstream calls.

The fetcher does not coalesce by default: two callers revalidating the same
stale key each hit the backend. Enabling coalescing routes upstream calls
through this class so callers that arrive while a call for the same key is
running wait for it and receive its result (or its exception).
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("cache.coalescer")


@dataclass
class _InFlight:
    """An upstream call that other callers may join."""
    done: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.monotonic)
    joined: int = 0


class RequestCoalescer:
    """
    One upstream call per key at a time, shared by all concurrent callers.

    Usage:
        coalescer = RequestCoalescer()
        clients = coalescer.run("admin:clients:{}", lambda: backend.select("clients"))
    """

    def __init__(self, timeout: float = 30.0):
        """
        Args:
            timeout: Max seconds a joining caller waits for the running call
        """
        self._timeout = timeout
        self._in_flight: Dict[str, _InFlight] = {}
        self._lock = threading.Lock()
        self.calls_started = 0
        self.calls_joined = 0

    def run(self, key: str, fetch_fn: Callable[[], Any]) -> Any:
        """
        Start the call for `key`, or join the one already running.

        Raises:
            TimeoutError: Joined call did not finish within the timeout
            Exception: Whatever fetch_fn raised, for the starter and all joiners
        """
        with self._lock:
            call = self._in_flight.get(key)
            owner = call is None
            if owner:
                call = _InFlight()
                self._in_flight[key] = call
                self.calls_started += 1
            else:
                call.joined += 1
                self.calls_joined += 1

        if owner:
            return self._execute(key, call, fetch_fn)

        logger.debug(f"Joined in-flight call for {key} ({call.joined} waiting)")
        if not call.done.wait(timeout=self._timeout):
            logger.error(f"Timed out waiting for in-flight call: {key}")
            raise TimeoutError(f"Call for {key} did not finish within {self._timeout}s")
        if call.error is not None:
            raise call.error
        return call.result

    def _execute(self, key: str, call: _InFlight, fetch_fn: Callable[[], Any]) -> Any:
        try:
            call.result = fetch_fn()
        except Exception as e:
            call.error = e
        finally:
            with self._lock:
                self._in_flight.pop(key, None)
            call.done.set()

        if call.error is not None:
            raise call.error
        return call.result

    @property
    def active_requests(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": sorted(self._in_flight),
                "calls_started": self.calls_started,
                "calls_joined": self.calls_joined,
            }
