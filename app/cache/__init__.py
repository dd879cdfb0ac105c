"""
Application data cache: per-domain LRU stores with TTL, tag and dependency
invalidation, best-effort persistence, stale-while-revalidate fetching and
batched warm-up.
"""
from .core import (
    CacheDomain,
    CacheEntry,
    CacheSource,
    CacheTag,
    CancellationToken,
    FetchResult,
)
from .scheduler import Scheduler, SystemScheduler, VirtualScheduler
from .ttl_policies import (
    DOMAIN_POLICIES,
    KEY_POLICIES,
    StorePolicy,
    get_policy_for_domain,
    get_policy_for_key,
    get_ttl_for_key,
)
from .tags import DependencyGraph, InvalidationCallbacks, TagIndex
from .persistence import MemoryMedium, PersistenceAdapter, SQLiteMedium
from .store import CacheStore, create_store
from .coalescer import RequestCoalescer
from .fetcher import StaleWhileRevalidateFetcher
from .orchestrator import (
    BatchOrchestrator,
    BatchQuery,
    BatchResult,
    CacheWarmer,
    PrefetchConfig,
    PrefetchSummary,
    Priority,
)
from .registry import CacheRegistry, UnknownDomainError, create_registry

__all__ = [
    # Core types
    "CacheDomain",
    "CacheEntry",
    "CacheSource",
    "CacheTag",
    "CancellationToken",
    "FetchResult",
    # Time
    "Scheduler",
    "SystemScheduler",
    "VirtualScheduler",
    # TTL policies
    "DOMAIN_POLICIES",
    "KEY_POLICIES",
    "StorePolicy",
    "get_policy_for_domain",
    "get_policy_for_key",
    "get_ttl_for_key",
    # Indices
    "DependencyGraph",
    "InvalidationCallbacks",
    "TagIndex",
    # Persistence
    "MemoryMedium",
    "PersistenceAdapter",
    "SQLiteMedium",
    # Store
    "CacheStore",
    "create_store",
    # Fetching
    "RequestCoalescer",
    "StaleWhileRevalidateFetcher",
    # Orchestration
    "BatchOrchestrator",
    "BatchQuery",
    "BatchResult",
    "CacheWarmer",
    "PrefetchConfig",
    "PrefetchSummary",
    "Priority",
    # Registry
    "CacheRegistry",
    "UnknownDomainError",
    "create_registry",
]
