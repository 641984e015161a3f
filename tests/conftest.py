"""
tests/conftest.py -- Shared test fixtures for ClinicGate tests.

This module provides:
  - FakeClock: a settable clock injected into AuthService for expiry-boundary tests
  - auth_service: AuthService on a fresh file-backed SQLite DB per test
  - make_user: factory that creates a user through the service
  - _patch_lifespan(): wires a test AuthService into app.state, bypassing real startup
  - api_client: TestClient with an admin bearer token for API integration tests

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit fixtures use a file in tmp_path instead, which also gives
the concurrency tests real SQLite locking.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.service import AuthService

ADMIN_PASSWORD = "testpass123"
DEFAULT_PASSWORD = "secret-pass-1"


class FakeClock:
    """Callable returning a fixed, manually advanced UTC time."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    # Whole seconds, so JWT exp (an integer timestamp) lines up exactly.
    return FakeClock(datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'auth.db'}"


@pytest.fixture
def auth_service(db_url: str, clock: FakeClock) -> Generator[AuthService, None, None]:
    service = AuthService.from_url(db_url, clock=clock)
    yield service
    service.close()


@pytest.fixture
def make_user(auth_service: AuthService) -> Callable[..., User]:
    """Return a factory: make_user("ana", role="terapeuta") -> User."""

    def _make(username: str, role: str = "terapeuta", password: str = DEFAULT_PASSWORD, email: str | None = None) -> User:
        return auth_service.create_user(username, email or f"{username}@clinic.test", password, role)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The admin
    ("testadmin" / ADMIN_PASSWORD) is created and logged in before the client
    starts. Tests that revoke logins must use their own users, not the admin.
    """
    name = request.module.__name__.rsplit(".", 1)[-1]
    service = AuthService.from_url(f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true")
    admin = service.create_user("testadmin", "admin@clinic.test", ADMIN_PASSWORD, "admin")
    token = service.login("testadmin", ADMIN_PASSWORD).access_token

    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    service.close()
