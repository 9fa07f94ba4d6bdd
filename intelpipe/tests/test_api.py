"""API endpoint tests"""

import json

import pytest
from fastapi.testclient import TestClient

from intelpipe.api.deps import get_alert_conditions, get_session_factory, get_source_configs
from intelpipe.main import app
from intelpipe.schemas.config import AlertCondition, SourceConfig

RECORDS = [
    {
        "id": "r-1",
        "title": "Acme Corp phishing kit",
        "summary": "Analysts traced CVE-2024-3400 exploitation to a kit sold on forums",
    },
]


class TestAPI:
    """Test API endpoints against a temporary database"""

    @pytest.fixture
    def client(self, session_factory, tmp_path):
        """Create test client with overridden dependencies"""
        export = tmp_path / "export.jsonl"
        export.write_text("\n".join(json.dumps(r) for r in RECORDS) + "\n", encoding="utf-8")
        configs = [
            SourceConfig(name="local-export", type="file", endpoint=str(export), rate_limit=0),
            SourceConfig(name="paused-feed", type="feed", endpoint="https://feed.test/rss", enabled=False),
        ]
        conditions = [AlertCondition(name="cve-watch", entity_filters={"cve": ["CVE-2024-*"]}, severity="critical")]

        app.dependency_overrides[get_session_factory] = lambda: session_factory
        app.dependency_overrides[get_source_configs] = lambda: configs
        app.dependency_overrides[get_alert_conditions] = lambda: conditions
        yield TestClient(app)
        app.dependency_overrides.clear()

    @pytest.fixture
    def ingested(self, client):
        """Run one cycle for the local export"""
        response = client.post("/pipeline/run?source=local-export")
        assert response.status_code == 200
        return response.json()

    def test_health_check(self, client):
        """Test health check endpoint"""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "ok"
        assert response.json()["last_run_status"] is None

    def test_readiness(self, client):
        """Test readiness probe"""
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_pipeline_run(self, ingested):
        """Test a triggered cycle reports its summary"""
        assert ingested["success"] is True
        assert ingested["collected"] == 1
        assert ingested["processed"] == 1
        assert ingested["notifications"] == 1
        assert ingested["sources"]["local-export"]["status"] == "ok"

    def test_pipeline_unknown_source(self, client):
        """Test triggering an unknown source returns 404"""
        response = client.post("/pipeline/run?source=nope")
        assert response.status_code == 404

    def test_items_by_source(self, client, ingested):
        """Test listing items by source"""
        response = client.get("/items?source=local-export")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["data"][0]["title"] == "Acme Corp phishing kit"
        assert "request_id" in data

    def test_items_by_entity(self, client, ingested):
        """Test entity lookups are case-insensitive for CVEs"""
        response = client.get("/items?entity_type=cve&value=cve-2024-3400")
        assert response.status_code == 200
        assert response.json()["count"] == 1

    def test_items_requires_filter(self, client):
        """Test listing without a filter is rejected"""
        assert client.get("/items").status_code == 400

    def test_item_detail(self, client, ingested):
        """Test an item is returned with its entities"""
        item_id = client.get("/items?source=local-export").json()["data"][0]["id"]
        response = client.get(f"/items/{item_id}")
        assert response.status_code == 200
        body = response.json()
        assert body["metadata"]["line"] == 1
        assert {(e["entity_type"], e["value"]) for e in body["entities"]} == {
            ("cve", "CVE-2024-3400"),
            ("organization", "Acme Corp"),
        }

    def test_item_not_found(self, client):
        """Test missing items return 404"""
        assert client.get("/items/does-not-exist").status_code == 404

    def test_related_entities(self, client, ingested):
        """Test co-occurring entities are listed"""
        response = client.get("/entities/related?entity_type=cve&value=CVE-2024-3400")
        assert response.status_code == 200
        related = response.json()["related"]
        assert related == [{"entity_type": "organization", "value": "Acme Corp", "shared_items": 1, "depth": 1}]

    def test_invalid_entity_type(self, client):
        """Test unknown entity types are rejected"""
        assert client.get("/entities/related?entity_type=planet&value=mars").status_code == 422

    def test_get_stats(self, client, ingested):
        """Test stats endpoint"""
        response = client.get("/stats")
        assert response.status_code == 200
        stats = response.json()
        assert stats["items_by_source"] == {"local-export": 1}
        assert stats["entities_by_type"] == {"cve": 1, "organization": 1}
        assert stats["processing"] == {"processed": 1}
        assert stats["notifications"] == 1
        assert stats["last_run"]["status"] == "success"

    def test_runs_and_sources(self, client, ingested):
        """Test run history and per-source state"""
        runs = client.get("/stats/runs").json()
        assert len(runs) == 1
        assert runs[0]["summary"]["collected"] == 1

        sources = {s["source_name"]: s for s in client.get("/stats/sources").json()}
        assert sources["local-export"]["last_status"] == "ok"
        assert sources["local-export"]["stored_items"] == 1
        assert sources["paused-feed"]["enabled"] is False
        assert sources["paused-feed"]["last_collected_at"] is None

    def test_alerts(self, client, ingested):
        """Test configured conditions and fired notifications"""
        conditions = client.get("/alerts/conditions").json()
        assert [c["name"] for c in conditions] == ["cve-watch"]

        notifications = client.get("/alerts/notifications?alert_name=cve-watch").json()
        assert len(notifications) == 1
        assert notifications[0]["severity"] == "critical"
        assert notifications[0]["delivered"] is True

    def test_invalid_endpoint(self, client):
        """Test invalid endpoint returns 404"""
        assert client.get("/invalid").status_code == 404
