"""
tests/conftest.py -- Shared test fixtures for authguard unit and integration tests.

This module provides (test doubles live in tests/helpers.py):
  - unit fixtures: user_store, device_store, audit_store, trail, credentials,
    tracker, engine, make_user
  - api: an ApiHarness around a TestClient with a patched lifespan

Design: Unit tests use plain sqlite:///:memory: (single thread). API tests
use named shared-memory SQLite URIs (file:name?mode=memory&cache=shared&uri=true)
because TestClient runs sync route handlers in a thread pool, and plain
:memory: DBs are per-connection.

DEBUG and RATE_LIMIT_ENABLED must be set before any authguard import:
get_settings() is cached on first use, and the limiter reads it at import.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Optional

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from audit.store import AuditStore
from audit.trail import AuditTrail
from auth.credentials import CredentialStore
from auth.engine import AuthSessionEngine
from auth.models import RequestContext, Role, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from devices.store import DeviceStore
from devices.tracker import DeviceTracker
from tests.helpers import CHROME_UA, PASSWORD, FakeClock, RecordingSender

# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(ip_address="203.0.113.7", user_agent=CHROME_UA)


@pytest.fixture
def user_store(clock: FakeClock) -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def device_store(clock: FakeClock) -> Generator[DeviceStore, None, None]:
    store = DeviceStore("sqlite:///:memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def audit_store(clock: FakeClock) -> Generator[AuditStore, None, None]:
    store = AuditStore("sqlite:///:memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def trail(audit_store: AuditStore, clock: FakeClock) -> AuditTrail:
    """AuditTrail with no dispatcher: every write is synchronous."""
    return AuditTrail(audit_store, clock=clock)


@pytest.fixture
def credentials(user_store: UserStore, clock: FakeClock) -> CredentialStore:
    return CredentialStore(user_store, get_settings(), clock=clock)


@pytest.fixture
def tracker(device_store: DeviceStore) -> DeviceTracker:
    return DeviceTracker(device_store, get_settings())


@pytest.fixture
def engine(
    credentials: CredentialStore,
    tracker: DeviceTracker,
    trail: AuditTrail,
    sender: RecordingSender,
    clock: FakeClock,
) -> AuthSessionEngine:
    return AuthSessionEngine(credentials, tracker, trail, sender, get_settings(), clock=clock)


def _create_user(
    store: UserStore,
    username: str,
    email: Optional[str] = None,
    password: str = PASSWORD,
    *,
    role: Role = Role.user,
    verified: bool = True,
    mfa: bool = False,
) -> User:
    user_id = store.create_user(
        User(
            username=username,
            email=email or f"{username}@example.com",
            hashed_password=hash_password(password),
            role=role,
            is_verified=verified,
            mfa_enabled=mfa,
        )
    )
    return store.get_by_id(user_id)


@pytest.fixture
def make_user(user_store: UserStore):
    """Factory: make_user("ada", role=Role.admin, mfa=True) -> persisted User."""

    def _make(username: str, email: Optional[str] = None, password: str = PASSWORD, **kwargs) -> User:
        return _create_user(user_store, username, email, password, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


class ApiHarness:
    """Everything an integration test needs: the client plus the wired services."""

    def __init__(self, client: TestClient, clock: FakeClock, sender: RecordingSender) -> None:
        self.client = client
        self.clock = clock
        self.sender = sender

    @property
    def user_store(self) -> UserStore:
        return app.state.user_store

    @property
    def audit_trail(self) -> AuditTrail:
        return app.state.audit_trail

    @property
    def engine(self) -> AuthSessionEngine:
        return app.state.engine

    def create_user(self, username: str, email: Optional[str] = None, password: str = PASSWORD, **kwargs) -> User:
        return _create_user(self.user_store, username, email, password, **kwargs)

    def token_for(self, user: User) -> str:
        return self.engine.credentials.issue_access_token(user)

    def headers_for(self, user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token_for(user)}"}

    def login(self, email: str, password: str = PASSWORD, user_agent: str = CHROME_UA):
        """POST /auth/login, then drop the cookie so later requests are explicit about auth."""
        resp = self.client.post(
            "/api/v1/auth/login",
            json={"email": email, "password": password},
            headers={"User-Agent": user_agent},
        )
        self.client.cookies.clear()
        return resp


def _patch_lifespan(
    user_store: UserStore,
    device_store: DeviceStore,
    audit_store: AuditStore,
    sender: RecordingSender,
    clock: FakeClock,
):
    """Replace the real lifespan: wire test stores into app.state, no dispatcher thread."""

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(
            app,
            user_store=user_store,
            device_store=device_store,
            audit_store=audit_store,
            notifier=sender,
            settings=get_settings(),
            clock=clock,
        )
        yield

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness backed by fresh, isolated in-memory stores."""
    suffix = uuid.uuid4().hex[:12]
    clock = FakeClock()
    sender = RecordingSender()

    def url(name: str) -> str:
        return f"sqlite:///file:test_{name}_{suffix}?mode=memory&cache=shared&uri=true"

    user_store = UserStore(url("users"), clock=clock)
    device_store = DeviceStore(url("devices"), clock=clock)
    audit_store = AuditStore(url("audit"), clock=clock)

    app.router.lifespan_context = _patch_lifespan(user_store, device_store, audit_store, sender, clock)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client, clock, sender)

    user_store.close()
    device_store.close()
    audit_store.close()
