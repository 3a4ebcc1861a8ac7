"""Tests de endpoints HTTP de health/ready/stats/metrics."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from automation_engine.main import app
from automation_engine.service import get_service


@pytest.fixture
def client():
    # Sin context manager: el lifespan (MQTT/BD reales) no se ejecuta
    yield TestClient(app)
    app.dependency_overrides.clear()


def _service(healthy=True):
    service = MagicMock()
    service.health_check.return_value = {"healthy": healthy, "mqtt_connected": healthy}
    service.stats = {"running": True, "handler": {"received": 3}}
    return service


class TestHealthEndpoints:

    def test_health_always_ok(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_ready_without_service(self, client):
        app.dependency_overrides[get_service] = lambda: None
        response = client.get("/ready")
        assert response.status_code == 503
        assert response.json()["reason"] == "Service not started"

    def test_ready_reflects_health(self, client):
        app.dependency_overrides[get_service] = lambda: _service(healthy=True)
        assert client.get("/ready").status_code == 200

        app.dependency_overrides[get_service] = lambda: _service(healthy=False)
        response = client.get("/ready")
        assert response.status_code == 503
        assert response.json()["mqtt_connected"] is False

    def test_stats(self, client):
        app.dependency_overrides[get_service] = lambda: _service()
        assert client.get("/stats").json()["handler"] == {"received": 3}

        app.dependency_overrides[get_service] = lambda: None
        assert client.get("/stats").json() == {"running": False}

    def test_metrics_exposition(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "automation_readings_total" in response.text
