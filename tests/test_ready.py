"""
Tests for /health and /ready.
"""
from __future__ import annotations

from unittest.mock import patch


def test_ready_pings_the_requested_tenant(app_client):
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=True):
        res = client.get("/ready", headers={"X-Tenant-ID": "acme"})

    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "ok"
    assert body["checks"]["db"] == "ok"
    assert body["checks"]["tenants"] == {"acme": "ok"}


def test_ready_degrades_when_redis_is_down(app_client):
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=False):
        res = client.get("/ready", headers={"X-Tenant-ID": "acme"})

    assert res.status_code == 503
    body = res.get_json()
    assert body["status"] == "degraded"
    assert body["checks"]["redis"] == "error"
    assert body["checks"]["db"] == "ok"


def test_ready_reports_an_unusable_tenant_id(app_client):
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=True):
        res = client.get("/ready", headers={"X-Tenant-ID": "Acme Corp"})

    assert res.status_code == 503
    assert res.get_json()["checks"]["tenants"] == {"acme corp": "error"}


def test_health_lists_opened_tenants(app_client):
    _app, client = app_client
    client.get("/ready", headers={"X-Tenant-ID": "acme"})

    res = client.get("/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "ok"
    assert body["tenants"] == ["acme"]
    assert "acme" in body["db_pool"]
