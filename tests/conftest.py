"""
tests/conftest.py -- Shared test fixtures for keyfob.

This module provides:
  - make_identity_store(): isolated named shared-memory identity DB
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus an admin user and an admin bearer token
  - minter / issuance: unit-level building blocks for service tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any core/api import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any core/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, configure_state
from auth.authenticator import CredentialAuthenticator
from auth.claims import ClaimAssembler
from auth.issuance import TokenIssuanceService
from auth.provisioning import RoleProvisioningService
from auth.refresh import InMemoryRefreshTokenStore
from auth.store import IdentityStore
from auth.tokens import TokenMinter, hash_password
from core.config import DEFAULT_ALLOWED_ROLES, Settings

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"

ADMIN_USERNAME = "testadmin"
ADMIN_PASSWORD = "testpass123"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_identity_store(db_suffix: str | None = None, **kwargs) -> IdentityStore:
    """Create an isolated named shared-memory IdentityStore.

    Args:
        db_suffix: Unique string appended to the DB name so test modules don't
                   share state. A random one is used when omitted.
    """
    name = db_suffix or uuid.uuid4().hex
    return IdentityStore(f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true", **kwargs)


def seed_roles(store: IdentityStore, roles=DEFAULT_ALLOWED_ROLES) -> None:
    for role in roles:
        store.ensure_role(role)


def create_user(store: IdentityStore, username: str, password: str, roles=(), email: str | None = None):
    """Create a user and give it roles directly through the store."""
    identity = store.create_user(username, hash_password(password), email=email)
    if roles:
        store.replace_roles(identity.user_id, remove=[], add=list(roles))
    return identity


def _patch_lifespan(settings: Settings, identity_store: IdentityStore, refresh_store: InMemoryRefreshTokenStore):
    """Return an async context manager that replaces the real lifespan.

    Runs the same configure_state() as production so TestClient routes see
    the real service graph over isolated test stores.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_state(app, settings, identity_store, refresh_store)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: IdentityStore
    admin_id: str
    admin_token: str

    def auth(self, token: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {token or self.admin_token}"}


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores.
    Rate limiting is switched off for the duration; the limiter is a
    process-wide singleton and login-heavy modules would trip it.
    """
    settings = Settings(secret_key=TEST_SECRET, debug=True)
    store = make_identity_store()
    refresh_store = InMemoryRefreshTokenStore()

    seed_roles(store)
    admin = create_user(store, ADMIN_USERNAME, ADMIN_PASSWORD, roles=["admin"], email="admin@example.com")

    app.router.lifespan_context = _patch_lifespan(settings, store, refresh_store)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        pair = app.state.issuance.password_grant(ADMIN_USERNAME, ADMIN_PASSWORD)
        yield ApiHarness(client=client, store=store, admin_id=admin.user_id, admin_token=pair.access_token.token)

    limiter.enabled = True
    store.close()


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = make_identity_store()
    seed_roles(s)
    yield s
    s.close()


@pytest.fixture
def minter() -> TokenMinter:
    return TokenMinter(TEST_SECRET)


@pytest.fixture
def refresh_store() -> InMemoryRefreshTokenStore:
    return InMemoryRefreshTokenStore()


@pytest.fixture
def issuance(store: IdentityStore, minter: TokenMinter, refresh_store: InMemoryRefreshTokenStore) -> TokenIssuanceService:
    return TokenIssuanceService(
        CredentialAuthenticator(store),
        store,
        ClaimAssembler(),
        minter,
        refresh_store,
    )


@pytest.fixture
def role_provisioning(store: IdentityStore) -> RoleProvisioningService:
    return RoleProvisioningService(store, DEFAULT_ALLOWED_ROLES)


@pytest.fixture
def make_user(store: IdentityStore):
    """Factory: make_user("alice", "pw", roles=["driver"], email=...) -> UserIdentity."""

    def _make(username: str, password: str = "password123", roles=(), email: str | None = None):
        return create_user(store, username, password, roles=roles, email=email)

    return _make
