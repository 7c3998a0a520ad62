"""
tests/conftest.py -- Shared test fixtures for the storefront auth tests.

This module provides:
  - store / hasher / issuer / clock / service: isolated building blocks for
    unit tests of the orchestrator and store
  - RecordingNotifier: captures reset / verification tokens that would
    otherwise be emailed
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api: TestClient over the real app with a fresh database per test

Design: file-backed SQLite under tmp_path (not shared-memory URIs). The
concurrency tests run real parallel writers through asyncio.to_thread, and a
file database in WAL mode serializes them with a busy wait instead of failing
with "database table is locked".

DEBUG must be set before any api/ import so get_settings() auto-generates the
JWT secrets instead of raising ValueError. bcrypt drops to 4 rounds for speed.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any api/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from api.policies import ROUTE_POLICIES
from auth.guard import AccessGuard
from auth.models import RequestContext
from auth.passwords import CredentialHasher
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenIssuer

ACCESS_SECRET = "a" * 64
REFRESH_SECRET = "r" * 64
STRONG_PASSWORD = "Passw0rd"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Adm1nPass"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Controllable UTC clock. Starts at the real current time."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class RecordingNotifier:
    resets: list[tuple[str, str]] = field(default_factory=list)
    verifications: list[tuple[str, str]] = field(default_factory=list)

    def send_password_reset(self, email: str, token: str) -> None:
        self.resets.append((email, token))

    def send_email_verification(self, email: str, token: str) -> None:
        self.verifications.append((email, token))


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path) -> Generator[UserStore, None, None]:
    user_store = UserStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield user_store
    user_store.close()


@pytest.fixture
def hasher() -> CredentialHasher:
    return CredentialHasher(rounds=4)


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(ACCESS_SECRET, REFRESH_SECRET, issuer="storefront-api", audience="storefront-client")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(store, hasher, issuer, clock, notifier) -> AuthService:
    return AuthService(store, hasher, issuer, notifier=notifier, clock=clock)


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(origin="127.0.0.1", user_agent="pytest")


# ---------------------------------------------------------------------------
# HTTP harness
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, auth_service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test objects into app.state so TestClient routes use an
    isolated database and fixed secrets instead of the configured ones.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.auth_service = auth_service
        app.state.guard = AccessGuard(auth_service.issuer, auth_service, ROUTE_POLICIES)
        yield

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    service: AuthService
    store: UserStore
    notifier: RecordingNotifier

    def register(self, email: str, password: str = STRONG_PASSWORD, **extra):
        body = {
            "email": email,
            "password": password,
            "confirm_password": password,
            "first_name": "Test",
            "last_name": "User",
        }
        body.update(extra)
        return self.client.post("/api/v1/auth/register", json=body)

    def login(self, email: str, password: str = STRONG_PASSWORD):
        return self.client.post("/api/v1/auth/login", json={"email": email, "password": password})

    def bearer(self, email: str, password: str = STRONG_PASSWORD) -> dict[str, str]:
        resp = self.login(email, password)
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def api(store, hasher, issuer, notifier) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness over the real app with a fresh database.

    An admin account (ADMIN_EMAIL / ADMIN_PASSWORD) exists before the first
    request, created the same way startup bootstraps it.
    """
    auth_service = AuthService(store, hasher, issuer, notifier=notifier)
    asyncio.run(auth_service.bootstrap_admin(ADMIN_EMAIL, ADMIN_PASSWORD))
    app.router.lifespan_context = _patch_lifespan(store, auth_service)
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, service=auth_service, store=store, notifier=notifier)
