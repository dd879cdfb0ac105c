"""
Best-effort persistence of cache entries to a durable key-value medium.

The medium is a cross-restart convenience, not a source of truth. Every
failure here is logged and absorbed; the in-memory store stays authoritative.
"""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol

from .core import CacheEntry
from .scheduler import Scheduler, SystemScheduler

logger = logging.getLogger("cache.persistence")


class KeyValueMedium(Protocol):
    """Durable string key-value storage."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str) -> List[str]:
        ...


class MemoryMedium:
    """In-process medium. Used in tests and when no database is configured."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str) -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_records (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteMedium:
    """
    SQLite-backed medium: one table of key -> serialized record.

    Opens a connection per operation so it can be shared between the
    request thread and the revalidation pool.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM cache_records WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache_records (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM cache_records WHERE key = ?", (key,))
            conn.commit()

    def keys(self, prefix: str) -> List[str]:
        # Filter in Python: LIKE would treat "_" and "%" in prefixes as wildcards
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key FROM cache_records").fetchall()
        return [row[0] for row in rows if row[0].startswith(prefix)]


class PersistenceAdapter:
    """
    Writes, removes and rehydrates cache entries on a KeyValueMedium.

    Keys passed in are already namespaced (prefix + cache key).
    """

    def __init__(self, medium: KeyValueMedium, scheduler: Optional[Scheduler] = None):
        self.medium = medium
        self._scheduler = scheduler or SystemScheduler()
        self.errors = 0

    def persist(self, namespaced_key: str, entry: CacheEntry) -> bool:
        """
        Serialize and write an entry.

        Returns:
            True if written. Serialization and write errors are logged and
            return False.
        """
        try:
            payload = json.dumps(entry.to_dict())
            self.medium.set(namespaced_key, payload)
            return True
        except Exception as e:
            self.errors += 1
            logger.warning(f"Failed to persist cache entry {namespaced_key}: {e}")
            return False

    def remove(self, namespaced_key: str) -> None:
        try:
            self.medium.delete(namespaced_key)
        except Exception as e:
            self.errors += 1
            logger.warning(f"Failed to remove persisted cache entry {namespaced_key}: {e}")

    def clear_namespace(self, prefix: str) -> int:
        """
        Delete every record under a prefix.

        Returns:
            Number of records deleted
        """
        try:
            keys = self.medium.keys(prefix)
        except Exception as e:
            self.errors += 1
            logger.warning(f"Failed to list persisted cache under {prefix}: {e}")
            return 0

        removed = 0
        for key in keys:
            try:
                self.medium.delete(key)
                removed += 1
            except Exception as e:
                self.errors += 1
                logger.warning(f"Failed to remove persisted cache entry {key}: {e}")
        return removed

    def rehydrate(self, prefix: str) -> List[CacheEntry]:
        """
        Load still-fresh entries stored under a prefix.

        Stale and unreadable records are deleted instead of loaded, so
        rehydration never resurrects expired data.
        """
        try:
            keys = self.medium.keys(prefix)
        except Exception as e:
            self.errors += 1
            logger.warning(f"Failed to load cache from persistence ({prefix}): {e}")
            return []

        now = self._scheduler.now()
        loaded: List[CacheEntry] = []
        discarded = 0

        for namespaced_key in keys:
            try:
                raw = self.medium.get(namespaced_key)
                if raw is None:
                    continue
                entry = CacheEntry.from_dict(json.loads(raw))
                entry.key = namespaced_key[len(prefix):]
            except Exception as e:
                self.errors += 1
                logger.warning(f"Discarding unreadable cache record {namespaced_key}: {e}")
                self.remove(namespaced_key)
                discarded += 1
                continue

            if entry.is_fresh(now):
                loaded.append(entry)
            else:
                self.remove(namespaced_key)
                discarded += 1

        if loaded or discarded:
            logger.info(
                f"Rehydrated {len(loaded)} cache entries from {prefix}* "
                f"({discarded} expired or unreadable discarded)"
            )
        return loaded
