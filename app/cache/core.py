"""
Core cache data structures.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Iterable, Optional, Set, TypeVar, Union

T = TypeVar("T")


class CacheDomain(Enum):
    """Logical domains, one cache store each."""
    DASHBOARD = "dashboard"
    ANALYTICS = "analytics"
    CALLS = "calls"
    LEADS = "leads"
    ADMIN = "admin"


class CacheTag(Enum):
    """Labels used for bulk invalidation. No meaning beyond grouping."""
    FINANCIAL = "financial"
    CLIENTS = "clients"
    USERS = "users"
    SYSTEM = "system"
    OPERATIONS = "operations"
    METRICS = "metrics"


class CacheSource(Enum):
    """Where a fetch result came from."""
    FRESH = "fresh"       # Within TTL
    STALE = "stale"       # Past TTL, served while revalidating or after a failed fetch
    UPSTREAM = "upstream" # Fetched from the backend


TagLike = Union[str, CacheTag]


def normalize_tags(tags: Optional[Iterable[TagLike]]) -> Set[str]:
    """Convert a mix of CacheTag members and strings to a set of strings."""
    if not tags:
        return set()
    return {t.value if isinstance(t, CacheTag) else str(t) for t in tags}


@dataclass
class CacheEntry(Generic[T]):
    """
    A cached value with the metadata needed for freshness and LRU decisions.

    Timestamps are scheduler seconds, not datetimes, so tests can use a
    virtual clock.
    """
    key: str
    data: T
    written_at: float
    ttl: float
    tags: Set[str] = field(default_factory=set)
    access_count: int = 0
    last_accessed_at: float = 0.0

    def __post_init__(self):
        if not self.last_accessed_at:
            self.last_accessed_at = self.written_at

    def age(self, now: float) -> float:
        """Seconds since the value was written."""
        return now - self.written_at

    def is_fresh(self, now: float) -> bool:
        return now - self.written_at <= self.ttl

    def is_stale(self, now: float) -> bool:
        return not self.is_fresh(now)

    def touch(self, now: float) -> None:
        """Record a read."""
        self.access_count += 1
        self.last_accessed_at = now

    def snapshot(self) -> "CacheEntry[T]":
        """Detached copy handed out by CacheStore.peek()."""
        return CacheEntry(
            key=self.key,
            data=self.data,
            written_at=self.written_at,
            ttl=self.ttl,
            tags=set(self.tags),
            access_count=self.access_count,
            last_accessed_at=self.last_accessed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form written by the persistence layer."""
        return {
            "key": self.key,
            "data": self.data,
            "writtenAt": self.written_at,
            "ttl": self.ttl,
            "tags": sorted(self.tags),
            "accessCount": self.access_count,
            "lastAccessedAt": self.last_accessed_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CacheEntry[Any]":
        return cls(
            key=raw["key"],
            data=raw["data"],
            written_at=float(raw["writtenAt"]),
            ttl=float(raw["ttl"]),
            tags=set(raw.get("tags") or []),
            access_count=int(raw.get("accessCount", 0)),
            last_accessed_at=float(raw.get("lastAccessedAt") or raw["writtenAt"]),
        )


@dataclass
class FetchResult(Generic[T]):
    """
    Data plus metadata about a cache-aware fetch, for API responses.
    """
    data: T
    source: CacheSource
    age_seconds: float = 0.0
    ttl_seconds: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert metadata to a dictionary for JSON responses."""
        return {
            "lastUpdated": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "cacheSource": self.source.value,
            "_debug": {
                "ttl": self.ttl_seconds,
                "age": round(self.age_seconds, 1),
            },
        }


class CancellationToken:
    """
    Scoped to a request or session. Cancelling it suppresses the cache write
    of any background refresh that was started under it.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
