"""
tests/conftest.py -- Shared test fixtures for the TimeTrack auth tests.

This module provides:
  - clock / settings / store / service / account: component fixtures, one
    isolated shared-memory DB per test
  - api_env: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import Account
from auth.service import AuthService
from auth.store import AccountStore
from core.config import Settings
from tests.support import ListAuditSink, ManualClock, make_account, make_settings, make_store

# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    store = make_store()
    yield store
    store.close()


@pytest.fixture
def audit_sink() -> ListAuditSink:
    return ListAuditSink()


@pytest.fixture
def service(store: AccountStore, settings: Settings, clock: ManualClock, audit_sink: ListAuditSink) -> AuthService:
    return AuthService(store, settings, clock=clock, audit=audit_sink)


@pytest.fixture
def account(store: AccountStore) -> Account:
    return make_account(store)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, service: AuthService, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store and service into app.state so TestClient
    routes see an isolated DB and a service with cheap bcrypt settings.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.auth_service = service
        await service.start()
        yield
        await service.stop()

    return test_lifespan


@pytest.fixture(scope="module")
def api_env() -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) for API integration tests.

    The service runs on the system clock. Each test creates its own account
    so the module-scoped rate-limit tables never leak between tests.
    """
    store = make_store()
    settings = make_settings()
    service = AuthService(store, settings, audit=ListAuditSink())
    app.router.lifespan_context = _patch_lifespan(store, service, settings)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service

    store.close()


@pytest.fixture(autouse=True)
def _reset_slowapi() -> None:
    """The slowapi limiter is process-global; start every test with empty counters."""
    limiter.reset()


@pytest.fixture
def api(api_env: tuple[TestClient, AuthService]) -> tuple[TestClient, AuthService]:
    """Per-test view of api_env with an empty cookie jar.

    TestClient keeps cookies between requests, so a session cookie from one
    test would otherwise authenticate the next.
    """
    client, service = api_env
    client.cookies.clear()
    return client, service
