"""
Shared fixtures: a virtual clock, a fake backend and a cache registry
wired to both.
"""
import pytest

from app.cache import CacheStore, VirtualScheduler, create_registry
from config.settings import Settings


class FakeBackend:
    """
    Stands in for BackendClient. Records every call and answers from
    canned data; a source registered in `failures` raises instead.
    """

    def __init__(self):
        self.calls = []
        self.responses = {}
        self.failures = set()

    def _answer(self, name, default):
        self.calls.append(name)
        if name in self.failures:
            raise ConnectionError(f"backend unavailable: {name}")
        return self.responses.get(name, default)

    def count(self, name):
        return self.calls.count(name)

    def select(self, table, filters=None, columns="*", order=None, limit=None, offset=None):
        return self._answer(table, [{"table": table, "filters": filters}])

    def select_one(self, table, filters):
        return self._answer(table, {"table": table, **filters})

    def insert(self, table, row):
        return self._answer(f"insert:{table}", {"id": "new", **row})

    def update(self, table, filters, changes):
        return self._answer(f"update:{table}", [{**filters, **changes}])

    def delete(self, table, filters):
        self._answer(f"delete:{table}", None)

    def rpc(self, function, args=None):
        return self._answer(function, {"function": function, "args": args or {}})


@pytest.fixture
def scheduler():
    """Clock that only moves when the test says so."""
    return VirtualScheduler()


@pytest.fixture
def make_store(scheduler):
    """Factory for stores on the virtual clock, destroyed after the test."""
    stores = []

    def factory(**kwargs):
        kwargs.setdefault("cleanup_interval", 0)
        kwargs.setdefault("scheduler", scheduler)
        store = CacheStore(**kwargs)
        stores.append(store)
        return store

    yield factory
    for store in stores:
        store.destroy()


@pytest.fixture
def test_settings():
    """Settings with persistence, sweeps and monitoring off."""
    return Settings(
        cache_persistence_enabled=False,
        cache_cleanup_interval_seconds=0,
        cache_monitor_interval_seconds=0,
        cache_revalidation_workers=2,
    )


@pytest.fixture
def registry(test_settings, scheduler):
    registry = create_registry(test_settings, scheduler=scheduler)
    yield registry
    registry.destroy()


@pytest.fixture
def backend():
    return FakeBackend()
