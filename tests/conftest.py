"""
tests/conftest.py -- Shared test fixtures for JYDoc accounts tests.

This module provides:
  - settings: a Settings instance with a fixed SECRET_KEY and bcrypt rounds=4
  - user_store / session_store: isolated SQLite files under tmp_path
  - clock: a manually advanced clock for session expiry tests
  - sessions / service: SessionManager and AuthenticationService over the above
  - make_user: registers an account through the service (optionally admin)
  - api_client: TestClient over the real app with a patched lifespan

Design: every store is a real SQLite FILE under pytest's tmp_path, not
:memory:. TestClient runs sync route handlers in a thread pool and the
concurrency tests spawn their own threads; a file database is shared by all
of those connections, while a plain :memory: one would present a blank schema
to each new connection.

DEBUG and LOGIN_RATE_LIMIT must be set before any app import so
get_settings() auto-generates SECRET_KEY instead of raising ValueError, and
so the login throttle does not trip across the many logins in the suite.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.hashing import PasswordHasher
from auth.models import Identity, Registration
from auth.service import AuthenticationService
from auth.store import UserStore
from core.config import Settings
from sessions.manager import SessionManager
from sessions.store import SessionStore

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
DEFAULT_PASSWORD = "Secret1"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(debug=True, secret_key=TEST_SECRET, bcrypt_rounds=4, session_idle_timeout=1800)


@pytest.fixture
def user_store(tmp_path, settings: Settings) -> Generator[UserStore, None, None]:
    store = UserStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
    store.seed_authorities(settings.bootstrap_authorities)
    yield store
    store.close()


@pytest.fixture
def session_store(tmp_path) -> Generator[SessionStore, None, None]:
    store = SessionStore(str(tmp_path / "sessions.db"))
    yield store
    store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hasher(settings: Settings) -> PasswordHasher:
    return PasswordHasher(rounds=settings.bcrypt_rounds)


@pytest.fixture
def sessions(session_store: SessionStore, user_store: UserStore, settings: Settings, clock: FakeClock) -> SessionManager:
    return SessionManager(session_store, user_store, settings, clock=clock)


@pytest.fixture
def service(
    user_store: UserStore,
    sessions: SessionManager,
    hasher: PasswordHasher,
    settings: Settings,
) -> AuthenticationService:
    return AuthenticationService(user_store, sessions, hasher, settings)


def _registration(username: str, email: str | None = None, password: str = DEFAULT_PASSWORD) -> Registration:
    return Registration(
        username=username,
        password=password,
        email=email or f"{username.lower()}@example.com",
        first_name=username.capitalize(),
        last_name="Tester",
    )


@pytest.fixture
def make_user(service: AuthenticationService, user_store: UserStore, settings: Settings) -> Callable[..., Identity]:
    """Factory: register an account and optionally grant the admin authority."""

    def _make(username: str, email: str | None = None, password: str = DEFAULT_PASSWORD, admin: bool = False):
        identity = service.register(_registration(username, email, password))
        if admin:
            user_store.grant_authority(identity.id, settings.admin_authority_name)
            identity = user_store.get_by_id(identity.id)
        return identity

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, session_store: SessionStore, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores into app.state the same way the real lifespan
    does. The purge_task is a long-sleeping coroutine so shutdown has a
    real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, user_store, session_store, settings)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(
    user_store: UserStore,
    session_store: SessionStore,
    settings: Settings,
) -> Generator[TestClient, None, None]:
    """TestClient over the real app with isolated stores.

    Stores are created before the client starts, so tests may seed data
    through the user_store / make_user fixtures as well as over HTTP.
    """
    app.router.lifespan_context = _patch_lifespan(user_store, session_store, settings)
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def login(api_client: TestClient) -> Callable[..., str]:
    """Log in over HTTP and return the bearer token. The client keeps the cookie."""

    def _login(username: str, password: str = DEFAULT_PASSWORD) -> str:
        resp = api_client.post("/api/v1/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()["access_token"]

    return _login
