"""
tests/conftest.py -- Shared test fixtures for TodoMaster auth tests.

This module provides:
  - FakeProvider: an in-process IdentityProvider (no network)
  - make_user_store(): isolated named shared-memory SQLite store
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api: per-test harness with a TestClient and direct handles on the
    store, monitor and provider behind it

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

DEBUG and AUTH_RATE_LIMIT must be set before any application import:
get_settings() is cached on first call, and the routers read the rate limit
at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import urlencode

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ["AUTH_RATE_LIMIT"] = "1000/minute"

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.federation import OAuthFlow
from auth.lockout import LockoutPolicy
from auth.oauth import IdentityProvider, ProviderGrant, ProviderProfile, ProviderTokens
from auth.state_store import OAuthStateStore
from auth.store import UserStore
from auth.tokens import create_access_token
from security.monitor import SecurityMonitor

# ---------------------------------------------------------------------------
# Fake identity provider
# ---------------------------------------------------------------------------


class FakeProvider(IdentityProvider):
    """Stands in for Google. Tests mutate profile/tokens/errors between calls."""

    name = "google"
    label = "Google"

    def __init__(self) -> None:
        in_an_hour = datetime.now(timezone.utc) + timedelta(hours=1)
        self.profile = ProviderProfile(
            subject="google-sub-123",
            email="gina@example.com",
            email_verified=True,
            name="Gina",
            avatar="https://img.example.com/gina.png",
        )
        self.tokens = ProviderTokens(access_token="access-1", refresh_token="refresh-1", expires_at=in_an_hour)
        self.refreshed = ProviderTokens(access_token="access-2", refresh_token=None, expires_at=in_an_hour)
        self.exchange_error: Exception | None = None
        self.exchange_delay = 0.0
        self.refresh_error: Exception | None = None
        self.exchange_calls = 0
        self.refresh_calls = 0

    async def authorization_url(self, redirect_uri: str, state: str) -> str:
        query = urlencode({"state": state, "redirect_uri": redirect_uri, "access_type": "offline", "prompt": "consent"})
        return f"https://accounts.example.test/o/oauth2/auth?{query}"

    async def exchange_code(self, code: str, redirect_uri: str) -> ProviderGrant:
        self.exchange_calls += 1
        if self.exchange_delay:
            await asyncio.sleep(self.exchange_delay)
        if self.exchange_error is not None:
            raise self.exchange_error
        return ProviderGrant(profile=self.profile, tokens=self.tokens)

    async def refresh(self, refresh_token: str) -> ProviderTokens:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refreshed


# ---------------------------------------------------------------------------
# Component helpers
# ---------------------------------------------------------------------------


def make_user_store() -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    return UserStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def make_flow(
    store: UserStore,
    monitor: SecurityMonitor,
    provider: IdentityProvider,
    timeout_seconds: float = 10.0,
) -> OAuthFlow:
    return OAuthFlow(
        store,
        OAuthStateStore(store.engine),
        monitor,
        {provider.name: provider},
        timeout_seconds=timeout_seconds,
    )


def _patch_lifespan(store: UserStore, monitor: SecurityMonitor, flow: OAuthFlow):
    """Return an async context manager that replaces the real lifespan.

    The background tasks are long-sleeping coroutines so shutdown can
    cancel() them like the real ones.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.oauth_states = flow.states
        app.state.monitor = monitor
        app.state.lockout_policy = LockoutPolicy(threshold=5, duration=timedelta(hours=2))
        app.state.oauth_flow = flow
        app.state.report_task = asyncio.create_task(asyncio.sleep(99999))
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.report_task.cancel()
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: UserStore
    monitor: SecurityMonitor
    provider: FakeProvider
    log_dir: Path

    def register(self, email="bob@example.com", password="Passw0rd", name="Bob"):
        return self.client.post("/api/v1/auth/register", json={"email": email, "password": password, "name": name})

    def login(self, email="bob@example.com", password="Passw0rd"):
        return self.client.post("/api/v1/auth/login", json={"email": email, "password": password})

    @staticmethod
    def auth_header(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def header_for(self, user_id: int) -> dict:
        return self.auth_header(create_access_token(user_id, expire_seconds=3600))


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def monitor(tmp_path: Path) -> SecurityMonitor:
    return SecurityMonitor(tmp_path / "logs")


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = make_user_store()
    yield s
    s.close()


@pytest.fixture
def flow_factory(store: UserStore, monitor: SecurityMonitor, fake_provider: FakeProvider):
    """Return a callable building an OAuthFlow over the test store, monitor and provider."""

    def factory(timeout_seconds: float = 10.0) -> OAuthFlow:
        return make_flow(store, monitor, fake_provider, timeout_seconds=timeout_seconds)

    return factory


@pytest.fixture
def api(store: UserStore, monitor: SecurityMonitor, fake_provider: FakeProvider) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness over the real app with isolated components.

    follow_redirects=False so OAuth tests can assert on Location headers.
    """
    flow = make_flow(store, monitor, fake_provider)
    app.router.lifespan_context = _patch_lifespan(store, monitor, flow)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, monitor=monitor, provider=fake_provider, log_dir=monitor.log_dir)
