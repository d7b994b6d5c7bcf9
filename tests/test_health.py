"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' against a live store
  - No authentication required
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from api.main import __version__
from auth.service import AuthService


def test_health_returns_200_with_components(api: tuple[TestClient, AuthService]):
    """Health endpoint returns 200 with status, version, and components."""
    client, _ = api
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == __version__
    assert data["components"] == {"database": "ok"}


def test_health_no_auth_required(api: tuple[TestClient, AuthService]):
    """Health endpoint is accessible without any cookie or Authorization header."""
    client, _ = api
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_health_reports_degraded_database(api: tuple[TestClient, AuthService], monkeypatch):
    client, service = api
    monkeypatch.setattr(service.store, "ping", lambda: False)
    data = client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "unavailable"
