"""
API tests: health, version, cache stats, invalidation and warm-up endpoints
"""
import pytest
from fastapi.testclient import TestClient

from app.cache import keys
from app.cached_services import CachedServices
from app.main import create_app


@pytest.fixture
def client(registry, backend, scheduler):
    services = CachedServices(registry, backend, scheduler=scheduler)
    with TestClient(create_app(registry, services)) as test_client:
        yield test_client


def test_health_endpoint_returns_200(client):
    """Test that /health returns HTTP 200"""
    response = client.get("/health")
    assert response.status_code == 200


def test_health_endpoint_returns_ok_status(client):
    """Test that /health returns status: ok"""
    data = client.get("/health").json()
    assert data["status"] == "ok"
    assert "admin" in data["domains"]


def test_version_endpoint(client):
    data = client.get("/version").json()
    assert data["full"] == f"{data['name']} {data['version']} ({data['stage']})"


def test_cache_stats(client, registry):
    registry.store("calls").set("calls:list:{}", [])
    data = client.get("/cache/stats").json()
    assert data["domains"]["calls"]["store"]["size"] == 1
    assert data["totals"]["size"] == 1


def test_invalidate_everything(client, registry):
    registry.store("calls").set("a", 1)
    registry.store("admin").set("b", 2)

    response = client.post("/cache/invalidate", json={})

    assert response.json() == {"removed": 2}


def test_invalidate_by_data_type(client, registry):
    registry.store("admin").set(keys.financial_metrics(), {}, tags=["financial"])
    registry.store("admin").set(keys.admin_users(), [], tags=["users"])

    response = client.post("/cache/invalidate", json={"data_type": "financial"})

    assert response.json() == {"removed": 1}


def test_invalidate_by_tags_in_domain(client, registry):
    registry.store("admin").set("a", 1, tags=["metrics"])
    registry.store("dashboard").set("b", 2, tags=["metrics"])

    response = client.post("/cache/invalidate", json={"domain": "admin", "tags": ["metrics"]})

    assert response.json() == {"removed": 1}
    assert registry.store("dashboard").has("b")


def test_invalidate_domain(client, registry):
    registry.store("leads").set("a", 1)
    assert client.post("/cache/invalidate", json={"domain": "leads"}).json() == {"removed": 1}


def test_invalidate_unknown_domain_returns_404(client):
    response = client.post("/cache/invalidate", json={"domain": "billing"})
    assert response.status_code == 404


def test_invalidate_unknown_data_type_returns_400(client):
    response = client.post("/cache/invalidate", json={"data_type": "weather"})
    assert response.status_code == 400


def test_delete_key(client, registry):
    key = keys.dashboard_metrics("c1")
    registry.store("dashboard").set(key, {})

    response = client.delete(f"/cache/dashboard/keys/{key}")

    assert response.json() == {"key": key, "deleted": True}
    assert not registry.store("dashboard").has_any(key)


def test_delete_key_unknown_domain(client):
    assert client.delete("/cache/billing/keys/x").status_code == 404


def test_warm_up_endpoints(client, registry):
    assert client.get("/cache/warm").json() == {"strategies": ["admin_dashboard", "time_based"]}

    response = client.post("/cache/warm/admin_dashboard")

    assert response.json() == {"strategy": "admin_dashboard", "ok": True}
    assert len(registry.store("admin")) == 7


def test_warm_up_unknown_strategy(client):
    assert client.post("/cache/warm/nightly").status_code == 404


def test_injected_registry_outlives_app(registry, backend):
    services = CachedServices(registry, backend)
    with TestClient(create_app(registry, services)):
        pass
    assert not registry.store("admin").destroyed
