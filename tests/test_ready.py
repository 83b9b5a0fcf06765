"""
Tests for /health and /ready endpoints.
"""
from __future__ import annotations

from unittest.mock import patch


def test_health(app_client):
    _app, client = app_client
    res = client.get("/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["db_pool"]["initialized"] is True
    assert res.headers["X-Request-ID"]


def test_ready_ok(app_client):
    """Test /ready returns ok when all services are healthy."""
    _app, client = app_client

    with patch("server._ping_redis", return_value=True):
        res = client.get("/ready")
        assert res.status_code == 200

        body = res.get_json()
        assert body["data"]["status"] == "ok"
        assert body["data"]["checks"] == {"db": "ok", "redis": "ok"}


def test_ready_redis_down(app_client):
    """Test /ready returns degraded when Redis is down."""
    _app, client = app_client

    with patch("server._ping_redis", return_value=False):
        res = client.get("/ready")
        assert res.status_code == 503
        body = res.get_json()
        assert body["data"]["status"] == "degraded"
        assert body["data"]["checks"]["redis"] == "error"


def test_unknown_endpoint_uses_envelope(app_client):
    _app, client = app_client
    res = client.get("/api/nowhere")
    assert res.status_code == 404
    assert res.get_json()["error"]["code"] == "NOT_FOUND"
