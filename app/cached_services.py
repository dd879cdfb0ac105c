"""
Cached wrappers for the dashboard's backend reads.

Every read goes through the domain's StaleWhileRevalidateFetcher; every
write invalidates whatever it could have made stale.
"""
import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Sequence

from app.backend_client import BackendClient
from app.cache import keys
from app.cache.core import CacheDomain
from app.cache.orchestrator import BatchQuery, BatchResult, CacheWarmer, PrefetchConfig, Priority
from app.cache.registry import CacheRegistry
from app.cache.scheduler import Scheduler, SystemScheduler

logger = logging.getLogger("cached_services")

# Business hours (local, inclusive) for the time-based warm-up
BUSINESS_HOURS = (9, 17)


class _CachedService:
    """Shared plumbing: one domain's store and fetcher plus the backend."""

    domain: CacheDomain

    def __init__(self, registry: CacheRegistry, backend: BackendClient):
        self.registry = registry
        self.backend = backend

    @property
    def store(self):
        return self.registry.store(self.domain)

    @property
    def fetcher(self):
        return self.registry.fetcher(self.domain)

    @property
    def orchestrator(self):
        return self.registry.orchestrator(self.domain)

    def _fetch(
        self,
        key: str,
        source: Callable[[], Any],
        force_refresh: bool = False,
        ttl: Optional[float] = None,
    ) -> Any:
        return self.fetcher.fetch_with_cache(key, source, ttl=ttl, force_refresh=force_refresh)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.store.get_stats()

    def clear_cache(self) -> int:
        return self.store.clear()


class CachedDashboardService(_CachedService):
    """Dashboard landing page data."""

    domain = CacheDomain.DASHBOARD

    def get_dashboard_metrics(self, client_id: Optional[str] = None, force_refresh: bool = False):
        return self._fetch(
            keys.dashboard_metrics(client_id),
            partial(self.backend.rpc, "get_dashboard_metrics", {"p_client_id": client_id}),
            force_refresh=force_refresh,
        )

    def get_agent_status(self, client_id: Optional[str] = None):
        return self._fetch(
            keys.agent_status(client_id),
            partial(self.backend.select, "agent_status", {"client_id": client_id}),
        )

    def get_system_messages(self, client_id: Optional[str] = None):
        return self._fetch(
            keys.system_messages(client_id),
            partial(
                self.backend.select,
                "system_messages",
                {"client_id": client_id, "is_active": True},
                order="created_at.desc",
            ),
        )

    def get_call_distribution(self, client_id: Optional[str] = None, timeframe: str = "week"):
        return self._fetch(
            keys.call_distribution(client_id, timeframe),
            partial(
                self.backend.rpc,
                "get_call_distribution",
                {"p_client_id": client_id, "p_timeframe": timeframe},
            ),
        )

    def refresh_dashboard_metrics(self, client_id: Optional[str] = None):
        """Bypass the cache and refetch."""
        return self.get_dashboard_metrics(client_id, force_refresh=True)

    def invalidate_cache(self, client_id: Optional[str] = None) -> int:
        return self.registry.invalidate_dashboard(client_id)

    def preload_dashboard_data(self, client_id: Optional[str] = None) -> List[BatchResult]:
        """Load the landing page's data concurrently; failures are reported, not raised."""
        results = self.orchestrator.batch_queries([
            BatchQuery(keys.dashboard_metrics(client_id),
                       partial(self.backend.rpc, "get_dashboard_metrics", {"p_client_id": client_id})),
            BatchQuery(keys.agent_status(client_id),
                       partial(self.backend.select, "agent_status", {"client_id": client_id})),
            BatchQuery(keys.system_messages(client_id),
                       partial(self.backend.select, "system_messages",
                               {"client_id": client_id, "is_active": True},
                               order="created_at.desc")),
            BatchQuery(keys.call_distribution(client_id, "week"),
                       partial(self.backend.rpc, "get_call_distribution",
                               {"p_client_id": client_id, "p_timeframe": "week"})),
        ])
        failed = [r.key for r in results if not r.ok]
        if failed:
            logger.warning(f"Failed to preload some dashboard data: {failed}")
        return results

    def prefetch_configs(self, client_id: Optional[str] = None) -> List[PrefetchConfig]:
        return [
            PrefetchConfig(
                keys.dashboard_metrics(client_id),
                partial(self.backend.rpc, "get_dashboard_metrics", {"p_client_id": client_id}),
                priority=Priority.HIGH,
            ),
            PrefetchConfig(
                keys.call_distribution(client_id, "week"),
                partial(self.backend.rpc, "get_call_distribution",
                        {"p_client_id": client_id, "p_timeframe": "week"}),
                priority=Priority.MEDIUM,
            ),
        ]


class CachedAnalyticsService(_CachedService):
    """Analytics page data."""

    domain = CacheDomain.ANALYTICS

    def _analytics_source(self, client_id: Optional[str], timeframe: str):
        return partial(
            self.backend.rpc,
            "get_analytics_data",
            {"p_client_id": client_id, "p_timeframe": timeframe},
        )

    def get_analytics_data(self, client_id: Optional[str] = None, timeframe: str = "month",
                           force_refresh: bool = False):
        return self._fetch(
            keys.analytics_data(client_id, timeframe),
            self._analytics_source(client_id, timeframe),
            force_refresh=force_refresh,
        )

    def get_call_performance(self, client_id: Optional[str] = None):
        return self._fetch(
            keys.call_performance(client_id),
            partial(self.backend.rpc, "get_call_performance_metrics", {"p_client_id": client_id}),
        )

    def get_lead_conversion(self, client_id: Optional[str] = None):
        return self._fetch(
            keys.lead_conversion(client_id),
            partial(self.backend.rpc, "get_lead_conversion_analytics", {"p_client_id": client_id}),
        )

    def batch_load_analytics(
        self,
        client_id: Optional[str] = None,
        timeframes: Sequence[str] = ("day", "week", "month"),
    ) -> Dict[str, Any]:
        """Analytics for several timeframes at once; a failed timeframe maps to None."""
        results = self.orchestrator.batch_queries([
            BatchQuery(keys.analytics_data(client_id, tf), self._analytics_source(client_id, tf))
            for tf in timeframes
        ])
        return {tf: result.data for tf, result in zip(timeframes, results)}

    def refresh_analytics_data(self, client_id: Optional[str] = None, timeframe: str = "month"):
        return self.get_analytics_data(client_id, timeframe, force_refresh=True)

    def invalidate_cache(self, client_id: Optional[str] = None) -> int:
        return self.registry.invalidate_analytics(client_id)


class CachedCallsService(_CachedService):
    """Call log data. Writes invalidate calls, dashboard and analytics."""

    domain = CacheDomain.CALLS

    def get_calls(self, filters: Optional[Dict[str, Any]] = None, force_refresh: bool = False,
                  ttl: Optional[float] = None):
        filters = dict(filters or {})
        limit = filters.pop("limit", None)
        offset = filters.pop("offset", None)
        return self._fetch(
            keys.calls({**filters, "limit": limit, "offset": offset}),
            partial(self.backend.select, "calls", filters,
                    order="created_at.desc", limit=limit, offset=offset),
            force_refresh=force_refresh,
            ttl=ttl,
        )

    def get_calls_by_status(self, status: str, client_id: Optional[str] = None):
        return self.get_calls({"status": status, "client_id": client_id})

    def get_calls_by_date_range(self, start_date: str, end_date: str,
                                client_id: Optional[str] = None):
        # Both bounds apply to created_at
        return self.get_calls({
            "and": f"(created_at.gte.{start_date},created_at.lte.{end_date})",
            "client_id": client_id,
        })

    def get_call_stats(self, client_id: Optional[str] = None, force_refresh: bool = False):
        return self._fetch(
            keys.call_stats(client_id),
            partial(self.backend.rpc, "get_call_stats", {"p_client_id": client_id}),
            force_refresh=force_refresh,
        )

    def get_recent_calls(self, limit: int = 5, client_id: Optional[str] = None):
        return self._fetch(
            keys.recent_calls(limit, client_id),
            partial(self.backend.select, "calls", {"client_id": client_id},
                    order="created_at.desc", limit=limit),
        )

    def batch_load_calls(self, filter_sets: Sequence[Dict[str, Any]]) -> List[Any]:
        """Several call lists at once; a failed list comes back as []."""
        queries = []
        for filters in filter_sets:
            filters = dict(filters)
            limit = filters.pop("limit", None)
            offset = filters.pop("offset", None)
            queries.append(BatchQuery(
                keys.calls({**filters, "limit": limit, "offset": offset}),
                partial(self.backend.select, "calls", filters,
                        order="created_at.desc", limit=limit, offset=offset),
            ))
        return [r.data if r.ok else [] for r in self.orchestrator.batch_queries(queries)]

    def refresh_calls(self, filters: Optional[Dict[str, Any]] = None):
        return self.get_calls(filters, force_refresh=True)

    def refresh_call_stats(self, client_id: Optional[str] = None):
        return self.get_call_stats(client_id, force_refresh=True)

    def update_call(self, call_id: str, changes: Dict[str, Any],
                    client_id: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = self.backend.update("calls", {"id": call_id}, changes)
        self.invalidate_cache(client_id)
        return rows

    def invalidate_cache(self, client_id: Optional[str] = None) -> int:
        return self.registry.invalidate_calls(client_id)


class CachedAdminService(_CachedService):
    """
    Client/user administration and platform-wide financial views.

    A cached client record is registered as a dependency of the client
    distribution and profitability views, so invalidating the record
    cascades to them.
    """

    domain = CacheDomain.ADMIN

    # Clients

    def get_clients(self, filters: Optional[Dict[str, Any]] = None,
                    pagination: Optional[Dict[str, Any]] = None):
        pagination = pagination or {}
        return self._fetch(
            keys.admin_clients(filters, pagination),
            partial(self.backend.select, "clients", filters, order="created_at.desc",
                    limit=pagination.get("limit"), offset=pagination.get("offset")),
        )

    def get_client(self, client_id: str):
        key = keys.admin_client(client_id)
        data = self._fetch(key, partial(self.backend.select_one, "clients", {"id": client_id}))
        self.store.add_dependency(keys.client_distribution(), key)
        self.store.add_dependency(keys.client_profitability(), key)
        return data

    def create_client(self, data: Dict[str, Any]):
        client = self.backend.insert("clients", data)
        self.registry.smart_invalidate("client")
        return client

    def update_client(self, client_id: str, changes: Dict[str, Any]):
        rows = self.backend.update("clients", {"id": client_id}, changes)
        self._client_changed(client_id)
        return rows[0] if rows else None

    def delete_client(self, client_id: str) -> None:
        self.backend.delete("clients", {"id": client_id})
        self._client_changed(client_id)

    def _client_changed(self, client_id: str) -> None:
        self.store.invalidate(keys.admin_client(client_id))
        self.registry.smart_invalidate("client")

    # Users

    def get_users(self, filters: Optional[Dict[str, Any]] = None,
                  pagination: Optional[Dict[str, Any]] = None):
        pagination = pagination or {}
        return self._fetch(
            keys.admin_users(filters, pagination),
            partial(self.backend.select, "users", filters, order="created_at.desc",
                    limit=pagination.get("limit"), offset=pagination.get("offset")),
        )

    def get_user(self, user_id: str):
        return self._fetch(
            keys.admin_user(user_id),
            partial(self.backend.select_one, "users", {"id": user_id}),
        )

    def create_user(self, data: Dict[str, Any]):
        user = self.backend.insert("users", data)
        self.registry.smart_invalidate("user")
        return user

    def update_user(self, user_id: str, changes: Dict[str, Any]):
        rows = self.backend.update("users", {"id": user_id}, changes)
        self.store.invalidate(keys.admin_user(user_id))
        self.registry.smart_invalidate("user")
        return rows[0] if rows else None

    def delete_user(self, user_id: str) -> None:
        self.backend.delete("users", {"id": user_id})
        self.store.invalidate(keys.admin_user(user_id))
        self.registry.smart_invalidate("user")

    # Platform views

    def get_platform_metrics(self, force_refresh: bool = False):
        return self._fetch(keys.platform_metrics(),
                           partial(self.backend.rpc, "get_admin_platform_metrics"),
                           force_refresh=force_refresh)

    def get_financial_metrics(self, timeframe: str = "current_month"):
        return self._fetch(keys.financial_metrics(timeframe),
                           partial(self.backend.rpc, "get_financial_metrics",
                                   {"p_timeframe": timeframe}))

    def get_cost_breakdown(self, start_date: str, end_date: str):
        return self._fetch(keys.cost_breakdown(start_date, end_date),
                           partial(self.backend.rpc, "get_cost_breakdown",
                                   {"p_start_date": start_date, "p_end_date": end_date}))

    def get_client_profitability(self, timeframe: str = "current_month"):
        return self._fetch(keys.client_profitability(timeframe),
                           partial(self.backend.rpc, "get_client_profitability",
                                   {"p_timeframe": timeframe}))

    def get_growth_trends(self):
        return self._fetch(keys.growth_trends(), partial(self.backend.rpc, "get_growth_trends"))

    def get_client_distribution(self):
        return self._fetch(keys.client_distribution(),
                           partial(self.backend.rpc, "get_client_distribution_metrics"))

    def get_user_analytics(self):
        return self._fetch(keys.user_analytics(), partial(self.backend.rpc, "get_user_analytics"))

    def get_system_health(self, client_id: Optional[str] = None):
        return self._fetch(keys.system_health(client_id),
                           partial(self.backend.rpc, "get_system_health",
                                   {"p_client_id": client_id}))

    def invalidate_cache(self) -> int:
        return self.registry.invalidate_admin()

    def prefetch_configs(self) -> List[PrefetchConfig]:
        return [
            PrefetchConfig(keys.platform_metrics(),
                           partial(self.backend.rpc, "get_admin_platform_metrics"),
                           priority=Priority.HIGH),
            PrefetchConfig(keys.financial_metrics(),
                           partial(self.backend.rpc, "get_financial_metrics",
                                   {"p_timeframe": "current_month"}),
                           priority=Priority.HIGH),
            PrefetchConfig(keys.admin_clients(None, {}),
                           partial(self.backend.select, "clients", None, order="created_at.desc",
                                   limit=None, offset=None),
                           priority=Priority.HIGH),
            PrefetchConfig(keys.admin_users(None, {}),
                           partial(self.backend.select, "users", None, order="created_at.desc",
                                   limit=None, offset=None),
                           priority=Priority.HIGH),
            PrefetchConfig(keys.client_distribution(),
                           partial(self.backend.rpc, "get_client_distribution_metrics"),
                           priority=Priority.MEDIUM),
            PrefetchConfig(keys.user_analytics(),
                           partial(self.backend.rpc, "get_user_analytics"),
                           priority=Priority.MEDIUM),
            PrefetchConfig(keys.growth_trends(),
                           partial(self.backend.rpc, "get_growth_trends"),
                           priority=Priority.LOW),
        ]


class CachedServices:
    """The four cached services plus the warm-up strategies that use them."""

    def __init__(
        self,
        registry: CacheRegistry,
        backend: BackendClient,
        scheduler: Optional[Scheduler] = None,
    ):
        self.registry = registry
        self.backend = backend
        self._scheduler = scheduler or SystemScheduler()

        self.dashboard = CachedDashboardService(registry, backend)
        self.analytics = CachedAnalyticsService(registry, backend)
        self.calls = CachedCallsService(registry, backend)
        self.admin = CachedAdminService(registry, backend)

        self.warmer = CacheWarmer()
        self.warmer.register("admin_dashboard", self._warm_admin_dashboard)
        self.warmer.register("time_based", self._warm_time_based)

    def _warm_admin_dashboard(self):
        return self.registry.orchestrator(CacheDomain.ADMIN).prefetch(self.admin.prefetch_configs())

    def in_business_hours(self) -> bool:
        hour = datetime.fromtimestamp(self._scheduler.now()).hour
        return BUSINESS_HOURS[0] <= hour <= BUSINESS_HOURS[1]

    def _warm_time_based(self):
        """During business hours, warm operational dashboard data."""
        configs = self.dashboard.prefetch_configs()
        for config in configs:
            config.condition = self.in_business_hours
        return self.registry.orchestrator(CacheDomain.DASHBOARD).prefetch(configs)
