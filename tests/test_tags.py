"""
Unit tests for the tag index, dependency graph and invalidation callbacks.
"""
from app.cache import DependencyGraph, InvalidationCallbacks, TagIndex


class TestTagIndex:
    """Tests for TagIndex."""

    def test_add_and_lookup(self):
        index = TagIndex()
        index.add("a", {"clients", "financial"})
        index.add("b", {"financial"})

        assert index.keys_for({"financial"}) == {"a", "b"}
        assert index.keys_for({"clients", "users"}) == {"a"}
        assert index.tags() == ["clients", "financial"]

    def test_remove_drops_empty_buckets(self):
        index = TagIndex()
        index.add("a", {"clients"})
        index.remove("a", {"clients"})
        assert len(index) == 0
        assert index.snapshot() == {}

    def test_remove_unknown_tag_is_noop(self):
        index = TagIndex()
        index.remove("a", {"nothing"})
        assert len(index) == 0


class TestDependencyGraph:
    """Tests for cascade ordering and cycles."""

    def test_cascade_is_transitive(self):
        graph = DependencyGraph()
        graph.add_dependency("financial", "clients")
        graph.add_dependency("profitability", "financial")

        assert graph.cascade("clients") == ["clients", "financial", "profitability"]
        assert graph.cascade("financial") == ["financial", "profitability"]

    def test_cycle_terminates_and_visits_each_key_once(self):
        graph = DependencyGraph()
        graph.add_dependency("b", "a")
        graph.add_dependency("c", "b")
        graph.add_dependency("a", "c")

        order = graph.cascade("a")

        assert order == ["a", "b", "c"]

    def test_two_node_cycle_from_either_end(self):
        graph = DependencyGraph()
        graph.add_dependency("a", "b")
        graph.add_dependency("b", "a")

        assert graph.cascade("a") == ["a", "b"]
        assert graph.cascade("b") == ["b", "a"]

    def test_diamond_visits_shared_dependent_once(self):
        graph = DependencyGraph()
        graph.add_dependency("left", "root")
        graph.add_dependency("right", "root")
        graph.add_dependency("bottom", "left")
        graph.add_dependency("bottom", "right")

        order = graph.cascade("root")

        assert order[0] == "root"
        assert sorted(order) == ["bottom", "left", "right", "root"]

    def test_remove_dependency(self):
        graph = DependencyGraph()
        graph.add_dependency("b", "a")
        graph.remove_dependency("b", "a")
        assert graph.cascade("a") == ["a"]
        assert len(graph) == 0


class TestInvalidationCallbacks:
    """Tests for subscribe/unsubscribe and dispatch."""

    def test_dispatch_passes_key(self):
        callbacks = InvalidationCallbacks()
        seen = []
        callbacks.subscribe("a", seen.append)

        callbacks.dispatch("a")
        callbacks.dispatch("b")

        assert seen == ["a"]

    def test_unsubscribe_is_idempotent(self):
        callbacks = InvalidationCallbacks()
        seen = []
        unsubscribe = callbacks.subscribe("a", seen.append)

        unsubscribe()
        unsubscribe()
        callbacks.dispatch("a")

        assert seen == []
        assert callbacks.count("a") == 0

    def test_failing_callback_does_not_stop_others(self):
        callbacks = InvalidationCallbacks()
        seen = []

        def broken(key):
            raise RuntimeError("subscriber bug")

        callbacks.subscribe("a", broken)
        callbacks.subscribe("a", seen.append)

        assert callbacks.dispatch("a") == 1
        assert seen == ["a"]


class TestStoreCascade:
    """Dependency cascades as seen through CacheStore."""

    def test_callbacks_fire_once_per_key_in_a_cycle(self, make_store):
        store = make_store()
        for key in ("a", "b", "c"):
            store.set(key, key.upper())
        store.add_dependency("b", "a")
        store.add_dependency("c", "b")
        store.add_dependency("a", "c")

        seen = []
        for key in ("a", "b", "c"):
            store.on_invalidate(key, seen.append)

        invalidated = store.invalidate("a")

        assert invalidated == {"a", "b", "c"}
        assert sorted(seen) == ["a", "b", "c"]
        assert len(store) == 0

    def test_callbacks_fire_for_dependents_without_entries(self, make_store):
        store = make_store()
        store.set("clients", [])
        store.add_dependency("financial", "clients")
        seen = []
        store.on_invalidate("financial", seen.append)

        store.invalidate("clients")

        assert seen == ["financial"]

    def test_callback_failure_does_not_abort_invalidation(self, make_store):
        store = make_store()
        store.set("a", 1)
        store.set("b", 2)
        store.add_dependency("b", "a")

        def broken(key):
            raise RuntimeError("subscriber bug")

        store.on_invalidate("a", broken)

        assert store.invalidate("a") == {"a", "b"}
        assert len(store) == 0
