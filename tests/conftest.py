"""
tests/conftest.py -- Shared test fixtures for the identity service tests.

This module provides:
  - store / issuer: a fresh in-memory IdentityStore and a TokenIssuer over it
  - alice: the canonical seeded account (role EDITOR with doc.read + doc.write)
  - make_orchestrator(): a SessionOrchestrator wired from real components
  - rsa_key / key_set / make_id_token: a local identity provider for
    federated-login tests (RSA keys generated with authlib, no network)
  - api_client: TestClient over the real app with a patched lifespan

Design: unit tests use plain sqlite:///:memory: because they run on one
thread. api_client uses a named shared-memory URI instead, because TestClient
runs sync route handlers in a thread pool and a plain :memory: database is
per-connection.

The DEBUG env var must be set before any core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from authlib.jose import JsonWebKey, jwt
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, attach_components
from auth.credentials import CredentialVerifier, hash_password
from auth.federated import FederatedVerifier
from auth.models import Permission, Role, User
from auth.permissions import PermissionResolver
from auth.rotation import RefreshRotationManager
from auth.session import SessionOrchestrator
from auth.store import IdentityStore
from auth.tokens import TokenIssuer
from core.config import get_settings
from main import seed_defaults

TEST_SECRET = "test-secret-key-with-at-least-32-characters!"
ALICE_PASSWORD = "correct-horse-battery"
ADMIN_PASSWORD = "admin-password-123"
CLIENT_ID = "test-client.apps.example.com"
ISSUER = "https://accounts.google.com"
KEY_ID = "test-key-1"

# ---------------------------------------------------------------------------
# Store and issuer
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def issuer(store: IdentityStore) -> TokenIssuer:
    return TokenIssuer(store, secret_key=TEST_SECRET, access_ttl=900, refresh_ttl=3600)


@dataclass
class SeededEditor:
    user_id: int
    role_id: int
    read_id: int
    write_id: int


def seed_editor(store: IdentityStore, username: str = "alice") -> SeededEditor:
    """Create role EDITOR (doc.read, doc.write) and an active user holding it."""
    read_id = store.upsert_permission(Permission(code="doc.read", module="doc", action="read", name="Read documents"))
    write_id = store.upsert_permission(
        Permission(code="doc.write", module="doc", action="write", name="Write documents")
    )
    role = store.get_role_by_code("EDITOR")
    if role is None:
        role_id = store.create_role(Role(code="EDITOR", name="Editor", level=50))
        store.assign_permission(role_id, read_id)
        store.assign_permission(role_id, write_id)
    else:
        role_id = role.id
    user_id = store.create_user(
        User(
            username=username,
            full_name=username.title(),
            email=f"{username}@example.com",
            hashed_password=hash_password(ALICE_PASSWORD),
            role_id=role_id,
        )
    )
    return SeededEditor(user_id=user_id, role_id=role_id, read_id=read_id, write_id=write_id)


@pytest.fixture
def alice(store: IdentityStore) -> SeededEditor:
    return seed_editor(store)


def make_orchestrator(
    store: IdentityStore,
    issuer: TokenIssuer,
    federated=None,
    audience: str = CLIENT_ID,
    revoke_all_on_reuse: bool = False,
) -> SessionOrchestrator:
    """Wire a SessionOrchestrator from real components around `store`."""
    resolver = PermissionResolver(store)
    return SessionOrchestrator(
        store,
        credentials=CredentialVerifier(store),
        federated=federated or FederatedVerifier("https://jwks.invalid", [ISSUER], fetcher=_no_fetch),
        resolver=resolver,
        issuer=issuer,
        rotation=RefreshRotationManager(store, resolver, issuer, revoke_all_on_reuse=revoke_all_on_reuse),
        federated_audience=audience,
    )


def _no_fetch(url: str) -> dict:
    raise AssertionError(f"unexpected key set fetch from {url}")


# ---------------------------------------------------------------------------
# Local identity provider
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_key():
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": KEY_ID})


@pytest.fixture(scope="session")
def key_set(rsa_key) -> dict:
    return {"keys": [rsa_key.as_dict(is_private=False, kid=KEY_ID)]}


@pytest.fixture(scope="session")
def make_id_token(rsa_key) -> Callable[..., str]:
    """Return a factory for RS256 ID tokens. Keyword overrides replace claims; None removes one."""

    def factory(key=None, kid: str = KEY_ID, **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "1234567890",
            "email": "carol@example.com",
            "email_verified": True,
            "name": "Carol Danvers",
            "picture": "https://example.com/carol.png",
            "iat": now,
            "exp": now + 600,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        token = jwt.encode({"alg": "RS256", "kid": kid}, claims, key or rsa_key)
        return token.decode("ascii")

    return factory


@pytest.fixture
def federated_verifier(key_set: dict) -> FederatedVerifier:
    return FederatedVerifier("https://jwks.test/certs", [ISSUER, "accounts.google.com"], fetcher=lambda url: key_set)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: IdentityStore, federated: FederatedVerifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and a local federated verifier through the same
    attach_components() the real lifespan uses.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings().model_copy(update={"google_client_id": CLIENT_ID})
        attach_components(app, store, settings, federated=federated)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request, key_set: dict) -> Generator[tuple[TestClient, str, IdentityStore], None, None]:
    """Yield (client, admin_token, store) for API integration tests.

    The store holds user 'admin' (SUPER_ADMIN through seed_defaults, so it
    carries roles.manage and users.manage) and 'alice' (EDITOR). The rate
    limiter is off; tests that exercise it switch it on themselves.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    store = IdentityStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    store.create_user(
        User(
            username="admin",
            full_name="Admin",
            email="admin@example.com",
            hashed_password=hash_password(ADMIN_PASSWORD),
        )
    )
    seed_defaults(store)
    seed_editor(store)

    federated = FederatedVerifier("https://jwks.test/certs", [ISSUER], fetcher=lambda url: key_set)
    app.router.lifespan_context = _patch_lifespan(store, federated)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        admin = store.get_user_by_username("admin")
        token = app.state.issuer.create_access_token(admin, ["roles.manage", "users.manage"])
        yield client, token, store

    limiter.enabled = True
    store.close()
