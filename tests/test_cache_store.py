"""
Unit tests for CacheStore.

Covers freshness, LRU eviction, the tag index, invalidation, the expiry
sweep, stats and write-through persistence. All timing runs on a
VirtualScheduler.
"""
import pytest

from app.cache import CacheTag, MemoryMedium, PersistenceAdapter


class BrokenMedium(MemoryMedium):
    """Medium whose writes always fail."""

    def set(self, key, value):
        raise OSError("disk full")


# =============================================================================
# Freshness
# =============================================================================

class TestFreshness:
    """Tests for TTL handling on reads."""

    def test_get_returns_fresh_value(self, make_store, scheduler):
        store = make_store(default_ttl=1)
        store.set("a", {"n": 1})
        scheduler.advance(0.5)
        assert store.get("a") == {"n": 1}

    def test_entry_at_exact_ttl_is_still_fresh(self, make_store, scheduler):
        store = make_store()
        store.set("a", 1, ttl=1)
        scheduler.advance(1)
        assert store.get("a") == 1

    def test_expired_entry_is_removed_on_read(self, make_store, scheduler):
        store = make_store(default_ttl=1)
        store.set("a", 1)
        scheduler.advance(1.5)

        assert store.get("a") is None
        assert store.has_any("a") is False
        assert store.get_stats()["expirations"] == 1

    def test_has_is_false_for_stale_entries(self, make_store, scheduler):
        store = make_store()
        store.set("a", 1, ttl=1)
        assert store.has("a")
        assert "a" in store

        scheduler.advance(2)
        assert not store.has("a")
        assert len(store) == 0

    def test_peek_returns_stale_copy_without_expiring(self, make_store, scheduler):
        store = make_store()
        store.set("a", "old", ttl=1)
        scheduler.advance(5)

        entry = store.peek("a")
        assert entry.data == "old"
        assert entry.is_stale(store.now())
        assert store.has_any("a")

    def test_get_or_set_computes_once(self, make_store):
        store = make_store()
        calls = []

        def compute():
            calls.append(1)
            return "value"

        assert store.get_or_set("a", compute) == "value"
        assert store.get_or_set("a", compute) == "value"
        assert len(calls) == 1

    def test_get_or_set_propagates_errors_and_stores_nothing(self, make_store):
        store = make_store()

        def compute():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.get_or_set("a", compute)
        assert not store.has_any("a")


# =============================================================================
# LRU Eviction
# =============================================================================

class TestEviction:
    """Tests for least-recently-used eviction."""

    def test_least_recently_read_entry_is_evicted(self, make_store):
        store = make_store(max_size=3)
        store.set("a", 1)
        store.set("b", 2)
        store.set("c", 3)
        store.get("a")

        store.set("d", 4)

        assert store.keys() == ["c", "a", "d"]
        assert store.has_any("b") is False
        assert store.get_stats()["evictions"] == 1

    def test_read_protects_older_entry(self, make_store):
        store = make_store(max_size=2)
        store.set("a", 1)
        store.set("b", 2)
        store.get("a")
        store.set("c", 3)

        assert sorted(store.keys()) == ["a", "c"]

    def test_overwrite_in_full_store_does_not_evict(self, make_store):
        store = make_store(max_size=2)
        store.set("a", 1)
        store.set("b", 2)

        store.set("a", 10)

        assert len(store) == 2
        assert store.get("a") == 10
        assert store.get("b") == 2
        assert store.get_stats()["evictions"] == 0

    def test_size_never_exceeds_max(self, make_store):
        store = make_store(max_size=5)
        for i in range(20):
            store.set(f"k{i}", i)
        assert len(store) == 5
        assert store.keys() == [f"k{i}" for i in range(15, 20)]

    def test_zero_max_size_is_rejected(self, make_store):
        with pytest.raises(ValueError):
            make_store(max_size=0)

    def test_eviction_drops_tag_references(self, make_store):
        store = make_store(max_size=1)
        store.set("a", 1, tags=[CacheTag.CLIENTS])
        store.set("b", 2, tags=["users"])
        assert store.tag_index() == {"users": {"b"}}


# =============================================================================
# Tags
# =============================================================================

class TestTags:
    """Tests for the tag index and tag-based clearing."""

    def test_enum_and_string_tags_are_equivalent(self, make_store):
        store = make_store()
        store.set("a", 1, tags=[CacheTag.FINANCIAL])
        store.set("b", 2, tags=["financial"])
        assert store.tag_index() == {"financial": {"a", "b"}}
        assert sorted(k for k, _ in store.get_by_tag(CacheTag.FINANCIAL)) == ["a", "b"]

    def test_overwrite_replaces_tags(self, make_store):
        store = make_store()
        store.set("a", 1, tags=["clients", "metrics"])
        store.set("a", 2, tags=["users"])
        assert store.tag_index() == {"users": {"a"}}

    def test_clear_by_tags_counts_each_entry_once(self, make_store):
        store = make_store()
        store.set("a", 1, tags=["clients", "financial"])
        store.set("b", 2, tags=["financial"])
        store.set("c", 3, tags=["users"])

        removed = store.clear_by_tags(["clients", "financial"])

        assert removed == 2
        assert store.keys() == ["c"]
        assert store.tag_index() == {"users": {"c"}}

    def test_clear_by_tags_runs_callbacks(self, make_store):
        store = make_store()
        seen = []
        store.set("a", 1, tags=["clients"])
        store.on_invalidate("a", seen.append)

        store.clear_by_tags(["clients"])
        assert seen == ["a"]

    def test_expired_entries_leave_the_index(self, make_store, scheduler):
        store = make_store()
        store.set("a", 1, ttl=1, tags=["metrics"])
        scheduler.advance(2)
        store.get("a")
        assert store.tag_index() == {}


# =============================================================================
# Delete and Invalidate
# =============================================================================

class TestInvalidation:
    """Tests for delete, invalidate and pattern invalidation."""

    def test_delete_runs_callbacks_but_not_dependents(self, make_store):
        store = make_store()
        store.set("clients", [1])
        store.set("financial", {"total": 5})
        store.add_dependency("financial", "clients")
        seen = []
        store.on_invalidate("clients", seen.append)

        assert store.delete("clients") is True
        assert seen == ["clients"]
        assert store.get("financial") == {"total": 5}

    def test_delete_missing_key(self, make_store):
        store = make_store()
        seen = []
        store.on_invalidate("a", seen.append)
        assert store.delete("a") is False
        assert seen == []

    def test_invalidate_cascades_to_dependents(self, make_store):
        store = make_store()
        store.set("clients", [1])
        store.set("financial", {"total": 5})
        store.set("profitability", {"margin": 0.2})
        store.add_dependency("financial", "clients")
        store.add_dependency("profitability", "financial")

        invalidated = store.invalidate("clients")

        assert invalidated == {"clients", "financial", "profitability"}
        assert len(store) == 0

    def test_invalidate_pattern(self, make_store):
        store = make_store()
        store.set("dashboard:call-distribution:c1:week", 1)
        store.set("dashboard:call-distribution:c1:month", 2)
        store.set("dashboard:call-distribution:c2:week", 3)

        removed = store.invalidate_pattern(r"^dashboard:call-distribution:c1:")

        assert removed == 2
        assert store.keys() == ["dashboard:call-distribution:c2:week"]

    def test_clear_keeps_dependencies_registered(self, make_store):
        store = make_store()
        store.add_dependency("b", "a")
        store.set("a", 1)
        store.set("b", 2)

        assert store.clear() == 2

        store.set("a", 1)
        store.set("b", 2)
        assert store.invalidate("a") == {"a", "b"}


# =============================================================================
# Sweep and Lifecycle
# =============================================================================

class TestSweep:
    """Tests for the periodic expiry sweep and destroy()."""

    def test_sweep_runs_on_interval(self, make_store, scheduler):
        store = make_store(cleanup_interval=60)
        store.set("short", 1, ttl=10)
        store.set("long", 2, ttl=600)

        scheduler.advance(61)

        assert store.keys() == ["long"]
        assert store.get_stats()["expirations"] == 1

    def test_cleanup_returns_count(self, make_store, scheduler):
        store = make_store()
        store.set("a", 1, ttl=1)
        store.set("b", 2, ttl=1)
        store.set("c", 3, ttl=100)
        scheduler.advance(5)
        assert store.cleanup() == 2

    def test_destroy_stops_sweep_and_ignores_writes(self, make_store, scheduler):
        store = make_store(cleanup_interval=30)
        assert scheduler.active_timers == 1

        store.destroy()
        store.set("a", 1)

        assert scheduler.active_timers == 0
        assert store.destroyed
        assert len(store) == 0


# =============================================================================
# Stats
# =============================================================================

class TestStats:
    """Tests for get_stats()."""

    def test_hit_rate_and_counts(self, make_store, scheduler):
        store = make_store(name="dashboard", max_size=10)
        store.set("a", {"x": 1}, ttl=5, tags=["metrics"])
        store.set("b", {"y": 2}, ttl=100)
        store.get("a")
        store.get("a")
        store.get("missing")
        scheduler.advance(10)

        stats = store.get_stats()

        assert stats["name"] == "dashboard"
        assert stats["size"] == 2
        assert stats["max_size"] == 10
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 66.7
        assert stats["fresh_entries"] == 1
        assert stats["stale_entries"] == 1
        assert stats["total_access_count"] == 2
        assert stats["average_age"] == pytest.approx(10.0)
        assert stats["tags"] == ["metrics"]
        assert stats["memory_usage"] > 0

    def test_empty_store(self, make_store):
        stats = make_store().get_stats()
        assert stats["hit_rate"] == 0.0
        assert stats["average_age"] == 0.0


# =============================================================================
# Write-through Persistence
# =============================================================================

class TestWriteThrough:
    """Tests for persistence as seen from the store."""

    def test_persisted_entry_is_removed_on_delete(self, make_store, scheduler):
        medium = MemoryMedium()
        store = make_store(name="admin", persistence=PersistenceAdapter(medium, scheduler))

        store.set("a", 1, persist=True)
        assert medium.keys("admin_cache_") == ["admin_cache_a"]

        store.delete("a")
        assert len(medium) == 0

    def test_persist_by_default(self, make_store, scheduler):
        medium = MemoryMedium()
        store = make_store(
            name="admin",
            persistence=PersistenceAdapter(medium, scheduler),
            persist_by_default=True,
        )
        store.set("a", 1)
        store.set("b", 2, persist=False)
        assert medium.keys("admin_cache_") == ["admin_cache_a"]

    def test_reset_without_persist_drops_old_record(self, make_store, scheduler):
        medium = MemoryMedium()
        store = make_store(persistence=PersistenceAdapter(medium, scheduler))
        store.set("a", 1, persist=True)
        store.set("a", 2, persist=False)
        assert len(medium) == 0
        assert store.get("a") == 2

    def test_persistence_failure_does_not_fail_set(self, make_store, scheduler):
        adapter = PersistenceAdapter(BrokenMedium(), scheduler)
        store = make_store(persistence=adapter)

        store.set("a", 1, persist=True)

        assert store.get("a") == 1
        assert adapter.errors == 1

    def test_clear_only_touches_own_namespace(self, make_store, scheduler):
        medium = MemoryMedium()
        adapter = PersistenceAdapter(medium, scheduler)
        admin = make_store(name="admin", persistence=adapter)
        calls = make_store(name="calls", persistence=adapter)
        admin.set("a", 1, persist=True)
        calls.set("a", 1, persist=True)

        admin.clear()

        assert medium.keys("") == ["calls_cache_a"]
