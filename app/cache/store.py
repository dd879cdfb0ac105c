"""
In-memory keyed store of time-bounded values with LRU eviction, tag and
dependency invalidation, and optional write-through persistence.
"""
import json
import logging
import re
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern, Set, Tuple, Union

from .core import CacheEntry, TagLike, normalize_tags
from .persistence import PersistenceAdapter
from .scheduler import Scheduler, SystemScheduler, TimerHandle
from .tags import DependencyGraph, InvalidationCallbacks, TagIndex
from .ttl_policies import StorePolicy

logger = logging.getLogger("cache.store")

# Fixed per-entry bookkeeping overhead used by the memory estimate
ENTRY_OVERHEAD_BYTES = 64


class CacheStore:
    """
    One logical domain's cache.

    - Lazy expiry: get()/has() drop entries whose TTL has elapsed
    - LRU eviction when a new key is inserted into a full store
    - Tag index and dependency graph kept in step with the entry table
    - Optional write-through to a PersistenceAdapter, rehydrated on construction
    - Periodic sweep of expired entries driven by the Scheduler

    All public methods are atomic with respect to each other. Invalidation
    callbacks run after the store lock is released.
    """

    def __init__(
        self,
        name: str = "default",
        default_ttl: float = 300,
        max_size: int = 100,
        cleanup_interval: float = 60,
        persistence: Optional[PersistenceAdapter] = None,
        persist_by_default: bool = False,
        prefix: Optional[str] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        """
        Initialize the store and rehydrate persisted entries.

        Args:
            name: Store name, used in logs and stats
            default_ttl: TTL in seconds when set() is not given one
            max_size: Maximum number of entries (at least 1)
            cleanup_interval: Seconds between expiry sweeps, 0 disables the sweep
            persistence: Durable write-through target, None disables persistence
            persist_by_default: Whether set() persists when not told explicitly
            prefix: Namespace for persisted records, defaults to "<name>_cache_"
            scheduler: Time source, defaults to the wall clock
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.name = name
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.cleanup_interval = cleanup_interval
        self.prefix = prefix if prefix is not None else f"{name}_cache_"
        self.persist_by_default = persist_by_default and persistence is not None

        self._scheduler = scheduler or SystemScheduler()
        self._persistence = persistence
        self._lock = threading.RLock()

        # Iteration order is access order: first item is least recently used
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._persisted: Set[str] = set()
        self._tags = TagIndex()
        self._dependencies = DependencyGraph()
        self._callbacks = InvalidationCallbacks()

        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
        }

        self._timer: Optional[TimerHandle] = None
        self._destroyed = False

        if self._persistence is not None:
            self._rehydrate()

        if cleanup_interval and cleanup_interval > 0:
            self._timer = self._scheduler.call_every(cleanup_interval, self.cleanup)

    @classmethod
    def from_policy(
        cls,
        policy: StorePolicy,
        cleanup_interval: float = 60,
        persistence: Optional[PersistenceAdapter] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> "CacheStore":
        """Build a store from a domain policy."""
        return cls(
            name=policy.domain.value,
            default_ttl=policy.default_ttl,
            max_size=policy.max_size,
            cleanup_interval=cleanup_interval,
            persistence=persistence if policy.persist else None,
            persist_by_default=policy.persist,
            prefix=policy.prefix,
            scheduler=scheduler,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, key: str) -> Optional[Any]:
        """
        Get a fresh value.

        Returns:
            The cached data, or None if absent or expired. Expired entries
            are removed.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            now = self._scheduler.now()
            if entry.is_stale(now):
                self._expire_locked(key)
                self._stats["misses"] += 1
                logger.debug(f"[{self.name}] expired on read: {key}")
                return None

            entry.touch(now)
            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return entry.data

    def has(self, key: str) -> bool:
        """True only if the key is present and fresh. Expired entries are removed."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_stale(self._scheduler.now()):
                self._expire_locked(key)
                return False
            return True

    def has_any(self, key: str) -> bool:
        """True if the key is present, fresh or stale."""
        with self._lock:
            return key in self._entries

    def peek(self, key: str) -> Optional[CacheEntry]:
        """
        Snapshot of an entry, fresh or stale, without expiring it or
        counting a hit/miss.
        """
        with self._lock:
            entry = self._entries.get(key)
            return entry.snapshot() if entry is not None else None

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """
        Like peek(), but records the read for LRU purposes.

        Used by the fetcher, which decides freshness itself and keeps its
        own hit/miss accounting via record_hit()/record_miss().
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            entry.touch(self._scheduler.now())
            self._entries.move_to_end(key)
            return entry.snapshot()

    def keys(self) -> List[str]:
        """All present keys, least recently used first."""
        with self._lock:
            return list(self._entries)

    def get_by_tag(self, tag: TagLike) -> List[Tuple[str, Any]]:
        """(key, data) for every present entry carrying the tag."""
        tag_names = normalize_tags([tag])
        with self._lock:
            keys = self._tags.keys_for(tag_names)
            return [(k, self._entries[k].data) for k in self._entries if k in keys]

    def tag_index(self) -> Dict[str, Set[str]]:
        """Copy of the tag index."""
        with self._lock:
            return self._tags.snapshot()

    def now(self) -> float:
        """Current time on this store's scheduler."""
        return self._scheduler.now()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    # =========================================================================
    # Writes
    # =========================================================================

    def set(
        self,
        key: str,
        data: Any,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[TagLike]] = None,
        persist: Optional[bool] = None,
    ) -> None:
        """
        Store a value.

        Inserting a new key into a full store first evicts the least recently
        accessed entry. Overwriting an existing key never evicts.

        Args:
            key: Cache key
            data: Payload
            ttl: Seconds until stale, defaults to the store's default_ttl
            tags: Labels for bulk invalidation
            persist: Write through to the durable medium; None uses the store default
        """
        tag_names = normalize_tags(tags)
        with self._lock:
            if self._destroyed:
                logger.warning(f"[{self.name}] set() on destroyed store ignored: {key}")
                return

            now = self._scheduler.now()
            existing = self._entries.get(key)
            if existing is not None:
                self._tags.remove(key, existing.tags)
            elif len(self._entries) >= self.max_size:
                self._evict_lru_locked()

            entry = CacheEntry(
                key=key,
                data=data,
                written_at=now,
                ttl=self.default_ttl if ttl is None else ttl,
                tags=tag_names,
                access_count=0,
                last_accessed_at=now,
            )
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._tags.add(key, tag_names)

            should_persist = self.persist_by_default if persist is None else persist
            if self._persistence is not None:
                if should_persist:
                    if self._persistence.persist(self._namespaced(key), entry.snapshot()):
                        self._persisted.add(key)
                elif key in self._persisted:
                    # Don't leave an older copy behind to be rehydrated later
                    self._remove_persisted_locked(key)

    def get_or_set(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl: Optional[float] = None,
        tags: Optional[Iterable[TagLike]] = None,
    ) -> Any:
        """
        Return the fresh cached value, or compute, store and return it.

        Errors from compute propagate and nothing is stored.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                now = self._scheduler.now()
                if entry.is_fresh(now):
                    entry.touch(now)
                    self._entries.move_to_end(key)
                    self._stats["hits"] += 1
                    return entry.data
                self._expire_locked(key)
            self._stats["misses"] += 1

        data = compute()
        self.set(key, data, ttl=ttl, tags=tags)
        return data

    def record_hit(self) -> None:
        with self._lock:
            self._stats["hits"] += 1

    def record_miss(self) -> None:
        with self._lock:
            self._stats["misses"] += 1

    # =========================================================================
    # Removal and invalidation
    # =========================================================================

    def delete(self, key: str) -> bool:
        """
        Remove an entry, its tag references and its persisted copy.

        Invalidation callbacks for the key run if an entry was removed.
        Dependents are not touched; use invalidate() to cascade.

        Returns:
            True if the key was present
        """
        with self._lock:
            removed = self._remove_locked(key)
        if removed:
            self._callbacks.dispatch(key)
        return removed

    def invalidate(self, key: str) -> Set[str]:
        """
        Remove a key and, transitively, every key that depends on it.

        Callbacks run once per invalidated key, whether or not it held an
        entry. Cycles in the dependency graph terminate.

        Returns:
            The set of keys invalidated
        """
        with self._lock:
            order = self._dependencies.cascade(key)
            for k in order:
                self._remove_locked(k)

        for k in order:
            self._callbacks.dispatch(k)

        if len(order) > 1:
            logger.info(f"[{self.name}] invalidated {key} and {len(order) - 1} dependents")
        else:
            logger.info(f"[{self.name}] invalidated {key}")
        return set(order)

    def clear_by_tags(self, tags: Iterable[TagLike]) -> int:
        """
        Remove every entry whose tags intersect the given tags.

        Returns:
            Number of entries removed
        """
        tag_names = normalize_tags(tags)
        with self._lock:
            tagged = self._tags.keys_for(tag_names)
            keys = [k for k in self._entries if k in tagged]
            for key in keys:
                self._remove_locked(key)

        for key in keys:
            self._callbacks.dispatch(key)

        if keys:
            logger.info(f"[{self.name}] cleared {len(keys)} entries tagged {sorted(tag_names)}")
        return len(keys)

    def invalidate_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        """
        Invalidate (with cascade) every present key matching a regex.

        Returns:
            Number of matching keys
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            matched = [k for k in self._entries if regex.search(k)]
        for key in matched:
            self.invalidate(key)
        return len(matched)

    def clear(self) -> int:
        """
        Remove all entries and every persisted record under this store's
        namespace. Dependencies and callbacks stay registered.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._tags.clear()
            self._persisted.clear()
            if self._persistence is not None:
                self._persistence.clear_namespace(self.prefix)
        logger.info(f"[{self.name}] cleared {count} cache entries")
        return count

    def cleanup(self) -> int:
        """
        Sweep out every expired entry and its persisted copy.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._scheduler.now()
            expired = [k for k, e in self._entries.items() if e.is_stale(now)]
            for key in expired:
                self._expire_locked(key)
        if expired:
            logger.debug(f"[{self.name}] sweep removed {len(expired)} expired entries")
        return len(expired)

    # =========================================================================
    # Dependencies and callbacks
    # =========================================================================

    def add_dependency(self, key: str, depends_on: str) -> None:
        """Invalidating `depends_on` will also invalidate `key`."""
        with self._lock:
            self._dependencies.add_dependency(key, depends_on)

    def remove_dependency(self, key: str, depends_on: str) -> None:
        with self._lock:
            self._dependencies.remove_dependency(key, depends_on)

    def on_invalidate(self, key: str, callback: Callable[[str], None]) -> Callable[[], None]:
        """
        Run callback(key) whenever the key is deleted, tag-cleared or
        invalidated (directly or by cascade).

        Returns:
            Unsubscribe function
        """
        return self._callbacks.subscribe(key, callback)

    # =========================================================================
    # Lifecycle and stats
    # =========================================================================

    def destroy(self) -> None:
        """Stop the sweep timer and drop in-memory entries. Persisted records stay."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._entries.clear()
            self._tags.clear()
            self._persisted.clear()
            self._destroyed = True
        logger.info(f"[{self.name}] cache store destroyed")

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            now = self._scheduler.now()
            entries = list(self._entries.values())
            hits = self._stats["hits"]
            misses = self._stats["misses"]
            total = hits + misses
            fresh = sum(1 for e in entries if e.is_fresh(now))

            return {
                "name": self.name,
                "size": len(entries),
                "max_size": self.max_size,
                "hits": hits,
                "misses": misses,
                "hit_rate": round(hits / total * 100, 1) if total > 0 else 0.0,
                "memory_usage": self._estimate_memory(entries),
                "fresh_entries": fresh,
                "stale_entries": len(entries) - fresh,
                "total_access_count": sum(e.access_count for e in entries),
                "average_age": (
                    sum(e.age(now) for e in entries) / len(entries) if entries else 0.0
                ),
                "evictions": self._stats["evictions"],
                "expirations": self._stats["expirations"],
                "tags": self._tags.tags(),
            }

    # =========================================================================
    # Internals (call with the lock held)
    # =========================================================================

    def _namespaced(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _remove_locked(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._tags.remove(key, entry.tags)
        if key in self._persisted:
            self._remove_persisted_locked(key)
        return True

    def _remove_persisted_locked(self, key: str) -> None:
        self._persisted.discard(key)
        if self._persistence is not None:
            self._persistence.remove(self._namespaced(key))

    def _expire_locked(self, key: str) -> None:
        if self._remove_locked(key):
            self._stats["expirations"] += 1

    def _evict_lru_locked(self) -> None:
        if not self._entries:
            return
        oldest_key = next(iter(self._entries))
        self._remove_locked(oldest_key)
        self._stats["evictions"] += 1
        logger.debug(f"[{self.name}] evicted least recently used: {oldest_key}")

    def _rehydrate(self) -> None:
        entries = self._persistence.rehydrate(self.prefix)
        entries.sort(key=lambda e: e.last_accessed_at)
        with self._lock:
            for entry in entries:
                if entry.key not in self._entries and len(self._entries) >= self.max_size:
                    self._evict_lru_locked()
                self._entries[entry.key] = entry
                self._entries.move_to_end(entry.key)
                self._tags.add(entry.key, entry.tags)
                self._persisted.add(entry.key)

    @staticmethod
    def _estimate_memory(entries: List[CacheEntry]) -> int:
        """Rough byte estimate: UTF-16 key and JSON payload plus fixed overhead."""
        size = 0
        for entry in entries:
            size += len(entry.key) * 2 + ENTRY_OVERHEAD_BYTES
            try:
                size += len(json.dumps(entry.data, default=str)) * 2
            except (TypeError, ValueError):
                size += len(repr(entry.data)) * 2
        return size


def create_store(
    policy: StorePolicy,
    scheduler: Optional[Scheduler] = None,
    persistence: Optional[PersistenceAdapter] = None,
    cleanup_interval: float = 60,
) -> CacheStore:
    """Create a store for one domain. Call destroy() on shutdown."""
    return CacheStore.from_policy(
        policy,
        cleanup_interval=cleanup_interval,
        persistence=persistence,
        scheduler=scheduler,
    )
