"""
tests/conftest.py -- Shared test fixtures for Gatekeeper tests.

This module provides:
  - settings, store, clock, notifier, service: a fully wired AuthService per test
  - make_user: seed an identity with a known password
  - _patch_lifespan(): wires a test service into app.state, bypassing real startup
  - api_client: TestClient over the real app with an isolated database

Design: each store is a temporary SQLite *file*, not :memory:. TestClient runs
sync route handlers in a thread pool and the sweeper runs its purges in worker
threads, so every connection must see the same database and the same locking
rules as production.

The DEBUG env var must be set before any gatekeeper module import so
get_settings() auto-generates SECRET_KEY in dev mode rather than raising
ValueError when api.main is imported.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import TwoFactorMethod, User
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import hash_password
from core.config import Settings
from tests.support import PASSWORD, TEST_SECRET, FakeClock, RecordingNotifier

# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


def _make_settings(db_url: str) -> Settings:
    return Settings(debug=True, secret_key=TEST_SECRET, database_url=db_url, smtp_host="")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return _make_settings(f"sqlite:///{tmp_path / 'auth.db'}")


@pytest.fixture
def store(settings) -> Generator[AuthStore, None, None]:
    s = AuthStore(settings.database_url)
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(store, notifier, settings, clock) -> AuthService:
    return AuthService(store, notifier, settings, clock=clock)


@pytest.fixture
def make_user(store):
    """Return a factory that inserts an identity and returns it reloaded from the store."""

    def _make(
        username: str = "alice",
        email: str | None = None,
        password: str | None = PASSWORD,
        roles: list[str] | None = None,
        is_active: bool = True,
        method: TwoFactorMethod = TwoFactorMethod.NONE,
        totp_secret: str | None = None,
    ) -> User:
        uid = store.create_user(
            User(
                username=username,
                email=email or f"{username}@example.com",
                hashed_password=hash_password(password) if password else None,
                is_active=is_active,
                two_factor_enabled=method is not TwoFactorMethod.NONE,
                two_factor_method=method,
                totp_secret=totp_secret,
                roles=["user"] if roles is None else roles,
            )
        )
        return store.get_by_id(uid)

    return _make


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test store and service into app.state so TestClient
    routes see an isolated database and a recording notifier. The sweep_task
    is a long-sleeping coroutine so shutdown has a real Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_store = store
        app.state.auth_service = service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(tmp_path) -> Generator[tuple[TestClient, AuthService, RecordingNotifier], None, None]:
    """Yield (client, service, notifier) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, middleware and exception handlers.
    """
    settings = _make_settings(f"sqlite:///{tmp_path / 'api_auth.db'}")
    store = AuthStore(settings.database_url)
    notifier = RecordingNotifier()
    service = AuthService(store, notifier, settings)

    app.router.lifespan_context = _patch_lifespan(store, service)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, service, notifier

    store.close()
