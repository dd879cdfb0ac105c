"""
Cache-aware fetching with stale-while-revalidate and serve-stale-on-error.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, Callable, Dict, Iterable, Optional, Set, TypeVar

from .coalescer import RequestCoalescer
from .core import CacheSource, CancellationToken, FetchResult, TagLike
from .store import CacheStore
from .ttl_policies import get_policy_for_key

logger = logging.getLogger("cache.fetcher")

T = TypeVar("T")


class StaleWhileRevalidateFetcher:
    """
    Wraps an upstream fetch function with a caching policy.

    Per call, the key is in one of these states:
    - Absent (or force_refresh): fetch, store, return. If the fetch fails and
      any copy is still in the store, return it; otherwise raise.
    - Fresh: return the cached value, the fetch function is not called.
    - Stale with stale_while_revalidate: return the stale value now and
      refresh in the background. A failed refresh leaves the entry alone.
    - Stale without stale_while_revalidate: same as Absent.

    Background refreshes are not deduplicated: two calls on the same stale
    key start two refreshes. Pass a RequestCoalescer to share in-flight
    upstream calls instead.
    """

    def __init__(
        self,
        store: CacheStore,
        max_revalidation_workers: int = 4,
        coalescer: Optional[RequestCoalescer] = None,
        use_key_policies: bool = True,
    ):
        """
        Args:
            store: Store that results are read from and written to
            max_revalidation_workers: Thread pool size for background refreshes
            coalescer: Share in-flight upstream calls per key when given
            use_key_policies: Fill in TTL, tags and SWR from the key-prefix table
                when a call doesn't specify them
        """
        self.store = store
        self._coalescer = coalescer
        self._use_key_policies = use_key_policies

        self._revalidation_pool = ThreadPoolExecutor(
            max_workers=max_revalidation_workers,
            thread_name_prefix="cache-revalidate",
        )
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "revalidations": 0,
            "revalidation_failures": 0,
            "stale_on_error": 0,
            "suppressed_writes": 0,
        }

    def fetch_with_cache(
        self,
        key: str,
        fetcher: Callable[[], T],
        ttl: Optional[float] = None,
        tags: Optional[Iterable[TagLike]] = None,
        force_refresh: bool = False,
        stale_while_revalidate: Optional[bool] = None,
        token: Optional[CancellationToken] = None,
    ) -> T:
        """
        Get data from cache or fetch it from upstream.

        Args:
            key: Cache key
            fetcher: Zero-argument function returning the data
            ttl: Seconds the result stays fresh
            tags: Labels stored with the result
            force_refresh: Skip the cache lookup and fetch synchronously
            stale_while_revalidate: Serve stale data while refreshing in the
                background; None uses the key policy (on by default)
            token: Suppresses the background refresh's write once cancelled

        Returns:
            The data

        Raises:
            Exception: Whatever fetcher raised, when no cached copy exists
        """
        return self.fetch_with_meta(
            key,
            fetcher,
            ttl=ttl,
            tags=tags,
            force_refresh=force_refresh,
            stale_while_revalidate=stale_while_revalidate,
            token=token,
        ).data

    def fetch_with_meta(
        self,
        key: str,
        fetcher: Callable[[], T],
        ttl: Optional[float] = None,
        tags: Optional[Iterable[TagLike]] = None,
        force_refresh: bool = False,
        stale_while_revalidate: Optional[bool] = None,
        token: Optional[CancellationToken] = None,
    ) -> FetchResult[T]:
        """Same as fetch_with_cache() but also reports where the data came from."""
        ttl, tags, allow_swr = self._resolve_policy(key, ttl, tags, stale_while_revalidate)
        effective_ttl = self.store.default_ttl if ttl is None else ttl

        if force_refresh:
            logger.info(f"FORCE REFRESH: {key}")
        else:
            entry = self.store.get_entry(key)
            if entry is not None:
                now = self.store.now()
                age = entry.age(now)

                # Cache hit - fresh
                if entry.is_fresh(now):
                    logger.debug(f"CACHE HIT (fresh): {key} [age={age:.1f}s]")
                    self.store.record_hit()
                    self._incr("hits_fresh")
                    return FetchResult(entry.data, CacheSource.FRESH, age, entry.ttl)

                # Stale but usable with SWR
                if allow_swr:
                    logger.info(f"CACHE HIT (stale, revalidating): {key} [age={age:.1f}s]")
                    self.store.record_hit()
                    self._incr("hits_stale")
                    self._trigger_background_revalidate(key, fetcher, ttl, tags, token)
                    return FetchResult(entry.data, CacheSource.STALE, age, entry.ttl)

                logger.info(f"CACHE EXPIRED: {key} [age={age:.1f}s]")
            else:
                logger.info(f"CACHE MISS: {key}")

        self.store.record_miss()
        self._incr("misses")

        try:
            data = self._call_upstream(key, fetcher)
        except Exception as e:
            fallback = self.store.peek(key)
            if fallback is None:
                raise
            now = self.store.now()
            source = CacheSource.FRESH if fallback.is_fresh(now) else CacheSource.STALE
            logger.warning(f"Fetch failed for {key}, serving cached {source.value} data: {e}")
            self._incr("stale_on_error")
            return FetchResult(fallback.data, source, fallback.age(now), fallback.ttl)

        self.store.set(key, data, ttl=ttl, tags=tags)
        return FetchResult(data, CacheSource.UPSTREAM, 0.0, effective_ttl)

    def _resolve_policy(self, key, ttl, tags, stale_while_revalidate):
        allow_swr = True
        if self._use_key_policies:
            policy = get_policy_for_key(key)
            if policy is not None:
                policy_ttl, policy_tags, policy_swr = policy
                if ttl is None:
                    ttl = policy_ttl
                if tags is None:
                    tags = policy_tags
                allow_swr = policy_swr
        if stale_while_revalidate is not None:
            allow_swr = stale_while_revalidate
        return ttl, tags, allow_swr

    def _call_upstream(self, key: str, fetcher: Callable[[], T]) -> T:
        if self._coalescer is not None:
            return self._coalescer.run(key, fetcher)
        return fetcher()

    def _trigger_background_revalidate(
        self,
        key: str,
        fetcher: Callable[[], Any],
        ttl: Optional[float],
        tags: Optional[Iterable[TagLike]],
        token: Optional[CancellationToken],
    ) -> Optional[Future]:
        """Refresh a key without blocking the caller."""

        def do_revalidate() -> bool:
            logger.debug(f"Background revalidation started: {key}")
            try:
                data = self._call_upstream(key, fetcher)
            except Exception as e:
                self._incr("revalidation_failures")
                logger.warning(f"Background revalidation failed: {key} - {e}")
                return False

            if token is not None and token.cancelled:
                self._incr("suppressed_writes")
                logger.info(f"Background revalidation for {key} discarded: request cancelled")
                return False

            self.store.set(key, data, ttl=ttl, tags=tags)
            self._incr("revalidations")
            logger.debug(f"Background revalidation complete: {key}")
            return True

        try:
            future = self._revalidation_pool.submit(do_revalidate)
        except RuntimeError as e:
            logger.warning(f"Background revalidation not started for {key}: {e}")
            return None

        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _incr(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    @property
    def pending_revalidations(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every background refresh started so far has finished.

        Returns:
            True if all finished within the timeout
        """
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting background refreshes. In-flight ones still complete."""
        self._revalidation_pool.shutdown(wait=wait)

    def get_stats(self) -> Dict[str, Any]:
        """Get fetcher statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        total_hits = stats["hits_fresh"] + stats["hits_stale"]
        total_requests = total_hits + stats["misses"]
        stats["hit_rate_percent"] = (
            round(total_hits / total_requests * 100, 1) if total_requests > 0 else 0.0
        )
        stats["revalidating_count"] = self.pending_revalidations
        if self._coalescer is not None:
            stats["coalescer"] = self._coalescer.get_stats()
        return stats
