"""
Integration tests for the insight admin API
Tests cache inspection, invalidation and entity change intake over HTTP
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from careboard import InsightOrchestrator, OrchestratorConfig
from careboard.dashboard.admin_api import router, get_orchestrator


class TestAdminApi:
    """Integration tests for the admin routes"""

    @pytest.fixture
    def orchestrator(self, fake_clock):
        return InsightOrchestrator(OrchestratorConfig(), clock=fake_clock)

    @pytest.fixture
    def app(self, orchestrator):
        """Create FastAPI app with insight routes"""
        app = FastAPI()
        app.include_router(router)
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        return app

    @pytest.fixture
    def client(self, app):
        return TestClient(app)

    def test_health_check_endpoint(self, client):
        response = client.get("/api/insights/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["active_tickets"] == 0

    def test_cache_statistics(self, client, orchestrator):
        orchestrator.cache_store.put("list:patients", ["p1"], 60000)

        response = client.get("/api/insights/cache/statistics")

        assert response.status_code == 200
        assert response.json()["cache"]["entries"] == 1

    def test_cache_entry_lookup(self, client, orchestrator, fake_clock):
        orchestrator.cache_store.put("list:patients:ward-a", ["p1"], 1000, tags=["patients"])
        fake_clock.advance(5000)

        response = client.get("/api/insights/cache/entries/list:patients:ward-a")

        assert response.status_code == 200
        data = response.json()
        assert data["value"] == ["p1"]
        assert data["state"] == "stale"
        assert data["in_flight"] is False
        assert data["waiters"] == 0

    def test_cache_entry_not_found(self, client):
        response = client.get("/api/insights/cache/entries/missing")
        assert response.status_code == 404

    def test_invalidate_key(self, client, orchestrator):
        orchestrator.cache_store.put("risk:p1", 0.3, 60000)

        response = client.post("/api/insights/cache/invalidate", json={"key": "risk:p1"})

        assert response.status_code == 200
        assert response.json() == {"key": "risk:p1", "invalidated": True}
        assert orchestrator.cache_store.get("risk:p1") is None

    def test_invalidate_requires_key(self, client):
        response = client.post("/api/insights/cache/invalidate", json={})
        assert response.status_code == 400

    def test_invalidate_prefix(self, client, orchestrator):
        orchestrator.cache_store.put("list:patients:1", 1, 60000)
        orchestrator.cache_store.put("list:patients:2", 2, 60000)

        response = client.post("/api/insights/cache/invalidate-prefix",
                               json={"prefix": "list:patients", "actor": "ops"})

        assert response.status_code == 200
        assert response.json()["invalidated"] == 2

    def test_entity_changed(self, client, orchestrator):
        orchestrator.cache_store.put("list:patients", ["p1"], 60000, tags=["patients"])
        received = []
        orchestrator.subscribe("entity:patients", received.append)

        response = client.post("/api/insights/entities/patients/p2/changed",
                               json={"changeKind": "Created"})

        assert response.status_code == 200
        assert response.json() == {
            "entityClass": "patients",
            "entityId": "p2",
            "changeKind": "Created",
            "sequence": 1,
        }
        assert received[0].payload == {"entityId": "p2", "changeKind": "Created"}
        assert orchestrator.cache_store.get("list:patients") is None

    def test_entity_changed_rejects_unknown_kind(self, client):
        response = client.post("/api/insights/entities/patients/p2/changed",
                               json={"changeKind": "Archived"})
        assert response.status_code == 400

    def test_channels(self, client, orchestrator):
        orchestrator.subscribe("entity:patients", lambda e: None)
        orchestrator.publish("entity:patients", {})

        response = client.get("/api/insights/channels")

        assert response.status_code == 200
        assert response.json()["channels"] == [
            {"channel": "entity:patients", "listeners": 1, "last_sequence": 1}
        ]

    def test_recent_audit_entries(self, client, orchestrator):
        orchestrator.invalidate("risk:p1", actor="ops")

        response = client.get("/api/insights/audit/recent", params={"limit": 5})

        assert response.status_code == 200
        data = response.json()
        assert data["available"] is True
        assert data["entries"][-1]["outcome"] == "invalidated"

    def test_metrics_endpoint(self, client, orchestrator):
        orchestrator.cache_store.get("missing")

        response = client.get("/api/insights/metrics")

        assert response.status_code == 200
        assert "careboard_cache_lookups_total" in response.text

    def test_metrics_disabled(self, app):
        orchestrator = InsightOrchestrator(OrchestratorConfig(metrics_enabled=False))
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator

        response = TestClient(app).get("/api/insights/metrics")

        assert response.status_code == 404
