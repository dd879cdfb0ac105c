"""
One cache store per domain, plus the invalidation entry points that domain
services call after writes.
"""
import logging
import re
from typing import Any, Dict, Iterable, Optional, Union

from .coalescer import RequestCoalescer
from .core import CacheDomain, CacheTag, TagLike
from .fetcher import StaleWhileRevalidateFetcher
from .orchestrator import DEFAULT_PREFETCH_DELAY, BatchOrchestrator
from .persistence import KeyValueMedium, PersistenceAdapter, SQLiteMedium
from .scheduler import Scheduler, SystemScheduler, TimerHandle
from .store import CacheStore, create_store
from .ttl_policies import get_policy_for_domain
from . import keys

logger = logging.getLogger("cache.registry")

DomainLike = Union[CacheDomain, str]

# Tags cleared by smart_invalidate() for each kind of changed data
SMART_INVALIDATION: Dict[str, tuple] = {
    # Client changes affect financial data
    "client": (CacheTag.CLIENTS, CacheTag.FINANCIAL, CacheTag.METRICS),
    "user": (CacheTag.USERS,),
    "financial": (CacheTag.FINANCIAL, CacheTag.METRICS),
    "system": (CacheTag.SYSTEM,),
    "metrics": (CacheTag.METRICS,),
}


class UnknownDomainError(KeyError):
    """Raised when a domain has no store in the registry."""


class CacheRegistry:
    """
    Holds the per-domain stores with their fetchers and orchestrators.

    Constructed explicitly (see create_registry()) and passed to consumers;
    call destroy() on shutdown to stop sweep timers and worker pools.
    """

    def __init__(
        self,
        stores: Dict[CacheDomain, CacheStore],
        scheduler: Optional[Scheduler] = None,
        revalidation_workers: int = 4,
        coalesce: bool = False,
        prefetch_delay: float = DEFAULT_PREFETCH_DELAY,
    ):
        self._scheduler = scheduler or SystemScheduler()
        self._stores = dict(stores)
        self._fetchers: Dict[CacheDomain, StaleWhileRevalidateFetcher] = {}
        self._orchestrators: Dict[CacheDomain, BatchOrchestrator] = {}
        self._monitor: Optional[TimerHandle] = None

        for domain, store in self._stores.items():
            fetcher = StaleWhileRevalidateFetcher(
                store,
                max_revalidation_workers=revalidation_workers,
                coalescer=RequestCoalescer() if coalesce else None,
            )
            self._fetchers[domain] = fetcher
            self._orchestrators[domain] = BatchOrchestrator(
                fetcher, scheduler=self._scheduler, prefetch_delay=prefetch_delay
            )

    # =========================================================================
    # Lookup
    # =========================================================================

    @property
    def domains(self):
        return list(self._stores)

    def _resolve(self, domain: DomainLike) -> CacheDomain:
        if isinstance(domain, CacheDomain):
            resolved = domain
        else:
            try:
                resolved = CacheDomain(str(domain).lower())
            except ValueError:
                raise UnknownDomainError(domain) from None
        if resolved not in self._stores:
            raise UnknownDomainError(domain)
        return resolved

    def store(self, domain: DomainLike) -> CacheStore:
        return self._stores[self._resolve(domain)]

    def fetcher(self, domain: DomainLike) -> StaleWhileRevalidateFetcher:
        return self._fetchers[self._resolve(domain)]

    def orchestrator(self, domain: DomainLike) -> BatchOrchestrator:
        return self._orchestrators[self._resolve(domain)]

    # =========================================================================
    # Invalidation entry points
    # =========================================================================

    def invalidate_all(self) -> int:
        """Clear every store. Returns the number of entries removed."""
        total = sum(store.clear() for store in self._stores.values())
        logger.info(f"Invalidated all caches ({total} entries)")
        return total

    def invalidate_by_domain(self, domain: DomainLike) -> int:
        """Clear one domain's store. Returns the number of entries removed."""
        return self.store(domain).clear()

    def clear_by_tags(
        self,
        tags: Iterable[TagLike],
        domains: Optional[Iterable[DomainLike]] = None,
    ) -> int:
        """
        Remove tagged entries from every store (or only the given domains).

        Returns:
            Total number of entries removed
        """
        tags = list(tags)
        targets = (
            [self.store(d) for d in domains] if domains is not None
            else list(self._stores.values())
        )
        return sum(store.clear_by_tags(tags) for store in targets)

    def smart_invalidate(self, data_type: str) -> int:
        """
        Invalidate whatever depends on a kind of changed data.

        Args:
            data_type: "client", "user", "financial", "system", "metrics" or "all"

        Returns:
            Number of entries removed
        """
        if data_type == "all":
            return self.invalidate_all()
        tags = SMART_INVALIDATION.get(data_type)
        if tags is None:
            raise ValueError(f"Unknown data type for invalidation: {data_type}")
        removed = self.clear_by_tags(tags)
        logger.info(f"Smart invalidation for {data_type}: {removed} entries removed")
        return removed

    def invalidate_dashboard(self, client_id: Optional[str] = None) -> int:
        """Drop one client's (or the platform's) dashboard entries."""
        if CacheDomain.DASHBOARD not in self._stores:
            return 0
        store = self._stores[CacheDomain.DASHBOARD]
        removed = 0
        for key in (
            keys.dashboard_metrics(client_id),
            keys.agent_status(client_id),
            keys.system_messages(client_id),
        ):
            if store.delete(key):
                removed += 1
        scope = re.escape(client_id or keys.PLATFORM)
        removed += store.invalidate_pattern(rf"^dashboard:call-distribution:{scope}:")
        return removed

    def invalidate_analytics(self, client_id: Optional[str] = None) -> int:
        """Drop one client's (or the platform's) analytics entries."""
        if CacheDomain.ANALYTICS not in self._stores:
            return 0
        scope = re.escape(client_id or keys.PLATFORM)
        return self._stores[CacheDomain.ANALYTICS].invalidate_pattern(
            rf"^analytics:[^:]+:{scope}(:|$)"
        )

    def invalidate_calls(self, client_id: Optional[str] = None) -> int:
        """
        Calls changed: clear the whole calls store (filters vary too much to
        target keys) plus the client's dashboard and analytics entries.
        """
        removed = self.invalidate_by_domain(CacheDomain.CALLS) if CacheDomain.CALLS in self._stores else 0
        removed += self.invalidate_dashboard(client_id)
        removed += self.invalidate_analytics(client_id)
        return removed

    def invalidate_leads(self, client_id: Optional[str] = None) -> int:
        """Leads changed: same cascade as calls, on the leads store."""
        removed = self.invalidate_by_domain(CacheDomain.LEADS) if CacheDomain.LEADS in self._stores else 0
        removed += self.invalidate_dashboard(client_id)
        removed += self.invalidate_analytics(client_id)
        return removed

    def invalidate_admin(self) -> int:
        return self.invalidate_by_domain(CacheDomain.ADMIN)

    # =========================================================================
    # Monitoring and lifecycle
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Per-domain store and fetcher stats plus totals."""
        domains = {}
        total_hits = total_misses = total_size = total_memory = 0
        for domain, store in self._stores.items():
            store_stats = store.get_stats()
            domains[domain.value] = {
                "store": store_stats,
                "fetcher": self._fetchers[domain].get_stats(),
            }
            total_hits += store_stats["hits"]
            total_misses += store_stats["misses"]
            total_size += store_stats["size"]
            total_memory += store_stats["memory_usage"]

        total = total_hits + total_misses
        return {
            "domains": domains,
            "totals": {
                "size": total_size,
                "hits": total_hits,
                "misses": total_misses,
                "hit_rate": round(total_hits / total * 100, 1) if total > 0 else 0.0,
                "memory_usage": total_memory,
            },
        }

    def start_monitoring(self, interval: float) -> None:
        """Log a performance summary every interval seconds."""
        if self._monitor is not None:
            self._monitor.cancel()
        self._monitor = self._scheduler.call_every(interval, self.log_performance)

    def log_performance(self) -> None:
        for domain, store in self._stores.items():
            stats = store.get_stats()
            logger.info(
                f"Cache performance [{domain.value}]: "
                f"hit_rate={stats['hit_rate']}% entries={stats['size']} "
                f"memory={stats['memory_usage'] / 1024:.2f}KB "
                f"avg_age={stats['average_age']:.2f}s"
            )

    def destroy(self) -> None:
        """Stop timers and worker pools, drop in-memory entries."""
        if self._monitor is not None:
            self._monitor.cancel()
            self._monitor = None
        for fetcher in self._fetchers.values():
            fetcher.shutdown(wait=False)
        for store in self._stores.values():
            store.destroy()


def create_registry(
    config=None,
    scheduler: Optional[Scheduler] = None,
    medium: Optional[KeyValueMedium] = None,
) -> CacheRegistry:
    """
    Build a registry with one store per CacheDomain.

    Args:
        config: Settings object, defaults to config.settings.settings
        scheduler: Time source shared by all stores
        medium: Durable medium; defaults to SQLite at config.cache_db_path
            when persistence is enabled
    """
    if config is None:
        from config.settings import settings as config

    scheduler = scheduler or SystemScheduler()

    persistence = None
    if config.cache_persistence_enabled:
        if medium is None:
            try:
                medium = SQLiteMedium(config.cache_db_path)
            except Exception as e:
                logger.warning(f"Cache persistence unavailable, continuing in memory: {e}")
        if medium is not None:
            persistence = PersistenceAdapter(medium, scheduler=scheduler)

    stores = {
        domain: create_store(
            get_policy_for_domain(domain),
            scheduler=scheduler,
            persistence=persistence,
            cleanup_interval=config.cache_cleanup_interval_seconds,
        )
        for domain in CacheDomain
    }

    registry = CacheRegistry(
        stores,
        scheduler=scheduler,
        revalidation_workers=config.cache_revalidation_workers,
        coalesce=config.cache_coalesce_requests,
        prefetch_delay=config.cache_prefetch_delay_seconds,
    )
    if config.cache_monitor_interval_seconds > 0:
        registry.start_monitoring(config.cache_monitor_interval_seconds)

    logger.info(
        f"Cache registry ready: {len(stores)} stores, "
        f"persistence {'on' if persistence else 'off'}"
    )
    return registry
