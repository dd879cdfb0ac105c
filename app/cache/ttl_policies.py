"""
TTL configuration: per-domain store policies and key-prefix overrides.
"""
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .core import CacheDomain, CacheTag


@dataclass(frozen=True)
class StorePolicy:
    """Size, TTL and persistence settings for one domain's store."""
    domain: CacheDomain
    default_ttl: float
    max_size: int
    persist: bool
    prefix: str


# Store policies by domain (TTL in seconds)
DOMAIN_POLICIES: Dict[CacheDomain, Dict[str, Any]] = {
    CacheDomain.DASHBOARD: {
        "default_ttl": 120,       # 2 minutes
        "max_size": 50,
        "persist": False,
    },
    CacheDomain.ANALYTICS: {
        "default_ttl": 300,       # 5 minutes
        "max_size": 100,
        "persist": False,
    },
    CacheDomain.CALLS: {
        "default_ttl": 60,        # 1 minute
        "max_size": 200,
        "persist": False,
    },
    CacheDomain.LEADS: {
        "default_ttl": 60,        # 1 minute
        "max_size": 200,
        "persist": False,
    },
    CacheDomain.ADMIN: {
        "default_ttl": 180,       # 3 minutes
        "max_size": 150,
        "persist": True,          # Survives a restart
    },
}


# Key-prefix overrides: (prefix, ttl_seconds, tags, allow_swr).
# First match wins, so more specific prefixes come first.
KEY_POLICIES: List[Tuple[str, int, FrozenSet[CacheTag], bool]] = [
    # Dashboard
    ("dashboard:metrics", 120, frozenset({CacheTag.METRICS}), True),
    ("dashboard:call-distribution", 180, frozenset({CacheTag.METRICS, CacheTag.OPERATIONS}), True),
    ("dashboard:agent-status", 30, frozenset({CacheTag.OPERATIONS}), False),  # Near real-time
    ("dashboard:system-messages", 60, frozenset({CacheTag.SYSTEM}), True),
    # Analytics
    ("analytics:data", 300, frozenset({CacheTag.METRICS}), True),
    ("analytics:call-performance", 300, frozenset({CacheTag.METRICS}), True),
    ("analytics:lead-conversion", 300, frozenset({CacheTag.METRICS}), True),
    # Calls
    ("calls:recent", 30, frozenset({CacheTag.OPERATIONS}), False),
    ("calls:stats", 120, frozenset({CacheTag.OPERATIONS, CacheTag.METRICS}), True),
    ("calls:list", 60, frozenset({CacheTag.OPERATIONS}), True),
    # Admin
    ("admin:platform-metrics", 300, frozenset({CacheTag.METRICS, CacheTag.SYSTEM}), True),
    ("admin:financial", 600, frozenset({CacheTag.FINANCIAL, CacheTag.METRICS}), True),
    ("admin:costs", 900, frozenset({CacheTag.FINANCIAL, CacheTag.METRICS}), True),
    ("admin:profitability", 600,
     frozenset({CacheTag.FINANCIAL, CacheTag.CLIENTS, CacheTag.METRICS}), True),
    ("admin:growth", 1800, frozenset({CacheTag.METRICS}), True),
    ("admin:client-distribution", 600, frozenset({CacheTag.CLIENTS, CacheTag.METRICS}), True),
    ("admin:user-analytics", 300, frozenset({CacheTag.USERS, CacheTag.METRICS}), True),
    ("admin:clients", 180, frozenset({CacheTag.CLIENTS}), True),
    ("admin:client", 120, frozenset({CacheTag.CLIENTS}), True),
    ("admin:users", 180, frozenset({CacheTag.USERS}), True),
    ("admin:user", 120, frozenset({CacheTag.USERS}), True),
    ("system:health", 60, frozenset({CacheTag.SYSTEM}), False),
]


def get_policy_for_domain(
    domain: CacheDomain,
    default_ttl: Optional[float] = None,
    max_size: Optional[int] = None,
    persist: Optional[bool] = None,
) -> StorePolicy:
    """
    Build the store policy for a domain.

    Args:
        domain: The cache domain
        default_ttl: Override the table's default TTL
        max_size: Override the table's max size
        persist: Override whether entries are written to the durable medium

    Returns:
        StorePolicy with the persistence prefix "<domain>_cache_"
    """
    config = DOMAIN_POLICIES[domain]
    return StorePolicy(
        domain=domain,
        default_ttl=config["default_ttl"] if default_ttl is None else default_ttl,
        max_size=config["max_size"] if max_size is None else max_size,
        persist=config["persist"] if persist is None else persist,
        prefix=f"{domain.value}_cache_",
    )


def get_policy_for_key(key: str) -> Optional[Tuple[int, FrozenSet[CacheTag], bool]]:
    """
    Find the key-prefix override for a cache key.

    Returns:
        (ttl_seconds, tags, allow_swr) or None if no prefix matches
    """
    for prefix, ttl, tags, allow_swr in KEY_POLICIES:
        if key.startswith(prefix):
            return ttl, tags, allow_swr
    return None


def get_ttl_for_key(key: str, default: float) -> float:
    """TTL for a key, falling back to the store default."""
    policy = get_policy_for_key(key)
    return policy[0] if policy else default
