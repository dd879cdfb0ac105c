"""
Secondary indices over a cache store: tags, dependencies and invalidation
callbacks.

None of these classes lock. CacheStore owns one of each and calls them while
holding its own lock, except InvalidationCallbacks.dispatch() which runs
subscriber code and is called after the lock is released.
"""
import logging
import threading
from collections import defaultdict, deque
from typing import Callable, Dict, Iterable, List, Set

logger = logging.getLogger("cache.tags")


class TagIndex:
    """
    Maps tag -> keys currently carrying it.

    Invariant: for every live entry E and tag t in E.tags, index[t] contains
    E.key, and no tag maps to a key that is not live.
    """

    def __init__(self):
        self._index: Dict[str, Set[str]] = defaultdict(set)

    def add(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            self._index[tag].add(key)

    def remove(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            bucket = self._index.get(tag)
            if bucket is None:
                continue
            bucket.discard(key)
            if not bucket:
                del self._index[tag]

    def keys_for(self, tags: Iterable[str]) -> Set[str]:
        """Union of keys tagged with any of the given tags."""
        found: Set[str] = set()
        for tag in tags:
            found |= self._index.get(tag, set())
        return found

    def tags(self) -> List[str]:
        return sorted(self._index)

    def snapshot(self) -> Dict[str, Set[str]]:
        """Copy of the index, for stats and tests."""
        return {tag: set(keys) for tag, keys in self._index.items()}

    def clear(self) -> None:
        self._index.clear()

    def __len__(self) -> int:
        return len(self._index)


class DependencyGraph:
    """
    Maps key -> keys that depend on it.

    add_dependency("financial", "clients") means invalidating "clients"
    also invalidates "financial".
    """

    def __init__(self):
        self._dependents: Dict[str, Set[str]] = defaultdict(set)

    def add_dependency(self, key: str, depends_on: str) -> None:
        self._dependents[depends_on].add(key)

    def remove_dependency(self, key: str, depends_on: str) -> None:
        dependents = self._dependents.get(depends_on)
        if dependents is None:
            return
        dependents.discard(key)
        if not dependents:
            del self._dependents[depends_on]

    def dependents_of(self, key: str) -> Set[str]:
        return set(self._dependents.get(key, set()))

    def cascade(self, key: str) -> List[str]:
        """
        Every key reached from `key` through dependency edges, `key` first.

        Each key appears once, so cycles terminate.
        """
        order: List[str] = []
        visited: Set[str] = set()
        queue = deque([key])
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            order.append(current)
            for dependent in sorted(self._dependents.get(current, ())):
                if dependent not in visited:
                    queue.append(dependent)
        return order

    def clear(self) -> None:
        self._dependents.clear()

    def __len__(self) -> int:
        return sum(len(d) for d in self._dependents.values())


class InvalidationCallbacks:
    """Per-key subscribers run when a key is invalidated."""

    def __init__(self):
        self._callbacks: Dict[str, List[Callable[[str], None]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, key: str, callback: Callable[[str], None]) -> Callable[[], None]:
        """
        Register a callback for a key.

        Returns:
            An unsubscribe function. Calling it more than once is a no-op.
        """
        with self._lock:
            self._callbacks[key].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._callbacks.get(key)
                if not callbacks:
                    return
                try:
                    callbacks.remove(callback)
                except ValueError:
                    return
                if not callbacks:
                    del self._callbacks[key]

        return unsubscribe

    def count(self, key: str) -> int:
        with self._lock:
            return len(self._callbacks.get(key, ()))

    def dispatch(self, key: str) -> int:
        """
        Run every callback for a key. A failing callback is logged and does
        not stop the others.

        Returns:
            Number of callbacks that raised
        """
        with self._lock:
            callbacks = list(self._callbacks.get(key, ()))

        failures = 0
        for callback in callbacks:
            try:
                callback(key)
            except Exception as e:
                failures += 1
                logger.error(f"Invalidation callback failed for {key}: {e}")
        return failures

    def clear(self) -> None:
        with self._lock:
            self._callbacks.clear()
