"""
tests/conftest.py -- Shared test fixtures for LedgerGate integration tests.

This module provides:
  - make_store(): isolated in-memory relational store with system roles installed
  - make_cache(): CacheStore backed by fakeredis (no Redis server needed)
  - Clock: a settable clock for time-dependent unit tests
  - signing_keys: one RSA key pair per test session (generation is slow)
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus seeded identities for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and LOGIN_RATE_LIMIT must be set before any api/auth/core import:
get_settings() is cached at first call and api.main reads it at import.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import so get_settings() auto-generates
# signing keys in dev mode instead of raising ValueError, and so the login
# rate limit does not trip during the suite.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import fakeredis
import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, configure_services
from auth.keys import SigningKeys
from auth.models import Identity, IdentityStatus
from auth.passwords import hash_password
from auth.permissions import PERMISSIONS, SYSTEM_ROLES
from auth.store import IdentityStore
from cache.store import CacheStore
from core.config import Settings, generate_rsa_pem_pair

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(db_suffix: str | None = None) -> IdentityStore:
    """Create an isolated named shared-memory store with system roles installed.

    Args:
        db_suffix: Unique string appended to the DB name so test modules don't
                   share state. A random one is used when omitted.
    """
    suffix = db_suffix or uuid.uuid4().hex
    store = IdentityStore(db_url=f"sqlite:///file:test_identity_{suffix}?mode=memory&cache=shared&uri=true")
    store.ensure_system_roles(PERMISSIONS, SYSTEM_ROLES)
    return store


def make_cache() -> CacheStore:
    return CacheStore(fakeredis.FakeRedis(decode_responses=True))


def add_identity(
    store: IdentityStore,
    email: str,
    password: str = "correct-horse-battery",
    role: str = "ORG_USER",
    status: IdentityStatus = IdentityStatus.ACTIVE,
) -> Identity:
    role_obj = store.get_role_by_name(role)
    identity_id = store.create_identity(
        Identity(
            email=email,
            first_name="Test",
            last_name=role.title(),
            password_hash=hash_password(password),
            status=status,
            role_id=role_obj.id if role_obj else None,
        )
    )
    return store.get_by_id(identity_id)


class Clock:
    """Settable UTC clock. Pass the instance wherever a clock callable is accepted."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="session")
def signing_keys() -> SigningKeys:
    private_pem, public_pem = generate_rsa_pem_pair()
    return SigningKeys(private_pem=private_pem, public_pem=public_pem)


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def cache() -> CacheStore:
    return make_cache()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def make_identity(store):
    """Factory fixture: make_identity(email, password=..., role=..., status=...) -> Identity."""

    def factory(email: str, *args, **kwargs) -> Identity:
        return add_identity(store, email, *args, **kwargs)

    return factory


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, keys: SigningKeys, store: IdentityStore, cache: CacheStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores through the same configure_services() the
    real lifespan uses, so routes see the production object graph on top of
    in-memory backends. The cleanup task is a long-sleeping coroutine that
    keeps shutdown symmetric.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_services(app, settings, keys, store, cache)
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    store: IdentityStore
    cache: CacheStore
    admin: Identity
    user: Identity
    password: str

    def login(self, email: str, password: str | None = None):
        """POST /auth/login and drop the cookies it set.

        The module-scoped client would otherwise send them on every later
        request, and the cookie takes priority over any Bearer header.
        """
        resp = self.client.post(
            "/api/v1/auth/login", json={"email": email, "password": password or self.password}
        )
        self.client.cookies.clear()
        return resp

    def add_identity(
        self, email: str, role: str = "ORG_USER", status: IdentityStatus = IdentityStatus.ACTIVE
    ) -> Identity:
        return add_identity(self.store, email, self.password, role=role, status=status)

    def bearer(self, email: str, password: str | None = None) -> dict[str, str]:
        resp = self.login(email, password)
        assert resp.status_code == 200, f"Login for {email} failed: {resp.text}"
        return {"Authorization": f"Bearer {resp.json()['accessToken']}"}


@pytest.fixture(scope="module")
def api_client(signing_keys: SigningKeys) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. An
    ORG_ADMIN and an ORG_USER are created before the client starts.
    """
    settings = Settings(
        debug=True,
        jwt_private_key=signing_keys.private_pem,
        jwt_public_key=signing_keys.public_pem,
        secure_cookies=False,
        invite_base_url="https://app.example.test",
    )
    store = make_store()
    cache = make_cache()
    password = "correct-horse-battery"
    admin = add_identity(store, "admin@ledgergate.test", password, role="ORG_ADMIN")
    user = add_identity(store, "teller@ledgergate.test", password, role="ORG_USER")

    app.router.lifespan_context = _patch_lifespan(settings, signing_keys, store, cache)
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client=client, store=store, cache=cache, admin=admin, user=user, password=password)

    store.close()
