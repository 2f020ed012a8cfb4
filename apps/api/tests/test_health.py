"""Tests for health endpoints."""

from unittest import mock

from fastapi.testclient import TestClient

from touristid_api.main import app

client = TestClient(app)


def test_health_check():
    """Test health endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "touristid-api"


def test_health_needs_no_identity():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.headers["x-correlation-id"]


def test_readiness_reports_each_dependency():
    """Readiness is 503 with per-check detail when a dependency is down."""
    with mock.patch("redis.from_url") as from_url:
        from_url.return_value.ping.side_effect = ConnectionError("redis down")
        response = client.get("/ready")

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "not_ready"
    assert set(data["checks"]) == {"database", "migrations", "redis", "ledger"}
    assert data["checks"]["database"] is True
    assert data["checks"]["redis"] is False
    assert data["checks"]["ledger"] is True


def test_root():
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert "service" in data
    assert data["service"] == "Digital Tourist ID API"


def test_metrics_exposed():
    response = client.get("/metrics/")
    assert response.status_code == 200
    assert "touristid_" in response.text
