"""
tests/conftest.py -- Shared test fixtures for authcore.

This module provides:
  - FrozenClock: a manually advanced Clock for exact expiry boundaries
  - make_settings(): Settings with a fixed key, fast bcrypt and a small throttle
  - service: a fully wired AuthService on a throwaway SQLite file
  - api_client: TestClient against the real app with a patched lifespan

Design: each fixture gets its own SQLite file under pytest's tmp_path. The
service runs store calls on its worker pools and TestClient runs route
handlers in a thread pool, so every store must see the same database from
many threads; a file in WAL mode gives that without shared-cache locking.

The env vars below must be set before any api/ or core/ import so that
get_settings() (cached on first call) sees them.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any authcore import. DEBUG lets get_settings()
# auto-generate SECRET_KEY; the other two keep bcrypt fast and keep the
# slowapi flood guard out of the way of functional tests.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_HTTP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Role
from auth.service import AuthService
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789"
T0 = 1_750_000_000.0

VIEWER = Role(name="viewer", permissions=frozenset({"read"}))
EDITOR = Role(name="editor", permissions=frozenset({"read", "write"}))
AUDITOR = Role(name="auditor", permissions=frozenset({"read", "audit:read"}))


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = T0) -> None:
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def make_settings(db_url: str, **overrides) -> Settings:
    values = {
        "debug": True,
        "db_url": db_url,
        "secret_key": TEST_SECRET,
        "bcrypt_rounds": 4,
        "access_token_ttl_seconds": 900,
        "refresh_token_ttl_seconds": 3600,
        "session_ttl_seconds": 7200,
        "clock_skew_leeway_seconds": 5,
        "login_max_attempts": 3,
        "login_window_seconds": 60,
        "storage_timeout_seconds": 2.0,
    }
    values.update(overrides)
    return Settings(**values)


def db_url_for(tmp_path, name: str = "auth") -> str:
    return f"sqlite:///{tmp_path / f'{name}.db'}"


def _seed_roles(service: AuthService) -> None:
    for role in (VIEWER, EDITOR, AUDITOR):
        service.users.upsert_role(role)


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(db_url_for(tmp_path))


@pytest.fixture
def service(settings, clock) -> Generator[AuthService, None, None]:
    """AuthService on a fresh database with viewer/editor/auditor roles defined."""
    svc = AuthService.from_settings(settings, clock=clock)
    _seed_roles(svc)
    yield svc
    svc.close()


@pytest.fixture
def alice(service):
    """A registered viewer: alice / Secret123!"""
    return service.register("alice", "alice@example.com", "Secret123!", roles=["viewer"])


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, auth_service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so routes use the test
    database instead of the configured one. The sweep_task is a long-sleeping
    coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.auth_service = auth_service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) for API integration tests.

    Users: alice (viewer) / Secret123!, root (auditor) / RootPass123!
    The service uses the system clock; time-sensitive cases are covered by
    the service-level tests with FrozenClock.
    """
    tmp_path = tmp_path_factory.mktemp("api")
    settings = make_settings(db_url_for(tmp_path), login_max_attempts=5)
    auth_service = AuthService.from_settings(settings)
    _seed_roles(auth_service)
    auth_service.register("alice", "alice@example.com", "Secret123!", roles=["viewer"])
    auth_service.register("root", "root@example.com", "RootPass123!", roles=["auditor"])

    app.router.lifespan_context = _patch_lifespan(settings, auth_service)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, auth_service

    auth_service.close()
