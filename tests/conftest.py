"""
tests/conftest.py -- Shared test fixtures for SessionGate unit and integration tests.

This module provides:
  - FakeClock / clock: a settable UTC clock injected into stores and services
  - engine, user_store, session_store, tokens, controller: unit-level wiring
    over a private in-memory SQLite database
  - _patch_lifespan(): builds the real services against an isolated DB,
    bypassing the production lifespan (no sweep task)
  - api_client: module-scoped TestClient plus an admin access token
  - client: the same TestClient with its cookie jar emptied for each test

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API fixtures because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit fixtures run single-threaded and use :memory:.

Environment must be set before any api/core import: DEBUG lets get_settings()
auto-generate secrets, ALLOWED_HOSTS admits the TestClient's "testserver"
Host header, and SWEEP_INTERVAL_SECONDS=0 keeps the background loop off.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("INTERNAL_API_SECRET", "test-internal-secret")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_services
from auth.controller import AuthSessionController
from auth.models import User, utcnow
from auth.sessions import SessionStore
from auth.store import UserStore, create_db_engine
from auth.tokens import TokenService, hash_password
from core.config import Settings, get_settings

# Rate limits are exercised in production only; a module's worth of logins
# from one TestClient would trip them.
limiter.enabled = False

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-pass-123"
USER_PASSWORD = "correct horse battery"

TEST_ACCESS_KEY = "a" * 64
TEST_REFRESH_KEY = "r" * 64
TEST_ENCRYPTION_KEY = "test-encryption-passphrase"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock returning a fixed aware UTC datetime until advanced."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Unit-level wiring
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        debug=True,
        secret_key=TEST_ACCESS_KEY,
        refresh_secret_key=TEST_REFRESH_KEY,
        encryption_key=TEST_ENCRYPTION_KEY,
    )


@pytest.fixture()
def engine():
    engine = create_db_engine("sqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture()
def user_store(engine, clock: FakeClock) -> UserStore:
    return UserStore(engine, clock=clock)


@pytest.fixture()
def session_store(engine, clock: FakeClock) -> SessionStore:
    return SessionStore(engine, clock=clock)


@pytest.fixture()
def tokens(settings: Settings, clock: FakeClock) -> TokenService:
    return TokenService(settings, clock=clock)


@pytest.fixture()
def controller(
    tokens: TokenService, session_store: SessionStore, user_store: UserStore, clock: FakeClock
) -> AuthSessionController:
    return AuthSessionController(tokens, session_store, user_store, clock=clock)


@pytest.fixture()
def user(user_store: UserStore) -> User:
    """A persisted regular user whose password is USER_PASSWORD."""
    uid = user_store.create_user(
        User(email="jane@example.com", full_name="Jane Doe", hashed_password=hash_password(USER_PASSWORD))
    )
    return user_store.get_by_id(uid)


# ---------------------------------------------------------------------------
# API wiring
# ---------------------------------------------------------------------------


def _test_db_url(db_suffix: str) -> str:
    """Named shared-memory SQLite URL, unique per test module."""
    return f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(db_url: str):
    """Return an async context manager that replaces the real lifespan.

    Builds the production services via build_services() so routes see real
    stores and controllers, only pointed at an isolated database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, get_settings().model_copy(update={"database_url": db_url}))
        yield
        app.state.engine.dispose()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers and middleware but use an isolated in-memory DB.
    The admin user is created once the services exist; the token is a normal
    access token for it, sent as a Bearer header.
    """
    app.router.lifespan_context = _patch_lifespan(_test_db_url(request.module.__name__.rsplit(".", 1)[-1]))

    with TestClient(app, raise_server_exceptions=False) as client:
        user_store: UserStore = app.state.user_store
        uid = user_store.create_user(
            User(email=ADMIN_EMAIL, role="admin", full_name="Admin", hashed_password=hash_password(ADMIN_PASSWORD))
        )
        token = app.state.tokens.issue_access_token(uid, ADMIN_EMAIL, "admin")
        yield client, token, uid


@pytest.fixture()
def client(api_client: tuple[TestClient, str, int]) -> TestClient:
    """The module's TestClient with an empty cookie jar."""
    test_client, _token, _uid = api_client
    test_client.cookies.clear()
    return test_client


@pytest.fixture()
def admin_headers(api_client: tuple[TestClient, str, int]) -> dict[str, str]:
    _client, token, _uid = api_client
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def registered(client: TestClient):
    """Factory: register a fresh account over HTTP and return (email, response json)."""
    counter = {"n": 0}

    def _register(prefix: str = "user") -> tuple[str, dict]:
        counter["n"] += 1
        email = f"{prefix}{counter['n']}-{os.urandom(4).hex()}@example.com"
        resp = client.post("/api/v1/auth/register", json={"email": email, "password": USER_PASSWORD})
        assert resp.status_code == 201, resp.text
        client.cookies.clear()
        return email, resp.json()

    return _register
