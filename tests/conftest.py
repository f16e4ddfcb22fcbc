"""
tests/conftest.py -- Shared test fixtures for AuthGate.

This module provides:
  - make_store(): an isolated named shared-memory ProfileStore
  - fake_provider(): a MagicMock IdentityProviderClient that knows two users
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient over the full app (API + web routes)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Each fixture gets its own uuid-suffixed name so tests never share rows.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from api.limiter import limiter
from asgi import app
from auth.audit import AuditRecorder
from auth.callback import OAuthCallbackReconciler
from auth.profiles import ProfileSynchronizer
from auth.provider import (
    ExchangeFailure,
    IdentityProviderClient,
    ProviderSession,
    SubjectNotFound,
    VerificationFailure,
    get_provider_client,
)
from auth.session import SessionResolver
from auth.store import ProfileStore

JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"

ALICE = {
    "id": "11111111-aaaa-4aaa-8aaa-111111111111",
    "email": "alice@example.com",
    "role": "authenticated",
    "user_metadata": {"full_name": "Alice Liddell", "avatar_url": "https://cdn.example.com/alice.png"},
}
BOB = {
    "id": "22222222-bbbb-4bbb-8bbb-222222222222",
    "email": "bob@example.com",
    "role": "authenticated",
    "user_metadata": {"full_name": "Bob Builder"},
}

# access token -> provider user object
TOKENS = {"token-alice": ALICE, "token-bob": BOB}

GOOD_CODE = "good-code"
GOOD_VERIFIER = "verifier-123"


def service_token(role: str = "service_role", secret: str = JWT_SECRET) -> str:
    """A provider-style service credential: HS256 JWT carrying only a role."""
    return jwt.encode({"role": role, "iss": "identity-provider"}, secret, algorithm="HS256")


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Store / provider helpers
# ---------------------------------------------------------------------------


def make_store(prefix: str = "authgate") -> ProfileStore:
    return ProfileStore(db_url=f"sqlite:///file:test_{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def fake_provider() -> MagicMock:
    """Return a provider double that verifies TOKENS and exchanges GOOD_CODE once per verifier.

    Behaviour mirrors the real client's error contract: every failure is a
    ProviderError subclass.
    """
    provider = MagicMock(spec=IdentityProviderClient)
    users_by_id = {u["id"]: u for u in TOKENS.values()}

    def _verify(access_token: str) -> dict:
        if access_token in TOKENS:
            return TOKENS[access_token]
        raise VerificationFailure("invalid JWT", status=401)

    def _get_session(access_token, refresh_token=None, expires_at=None):
        if access_token:
            return ProviderSession(access_token, refresh_token, expires_at)
        return None

    def _exchange(code: str, code_verifier: str | None) -> ProviderSession:
        if code == GOOD_CODE and code_verifier == GOOD_VERIFIER:
            return ProviderSession("token-alice", "refresh-alice", int(time.time()) + 3600, user=ALICE)
        raise ExchangeFailure("invalid flow state, no valid flow state found", status=400)

    def _get_user(subject_id: str) -> dict:
        if subject_id in users_by_id:
            return users_by_id[subject_id]
        raise SubjectNotFound("User not found", status=404)

    provider.verify_token.side_effect = _verify
    provider.get_session.side_effect = _get_session
    provider.exchange_code.side_effect = _exchange
    provider.get_user_by_id.side_effect = _get_user
    provider.refresh_session.side_effect = VerificationFailure("Invalid Refresh Token", status=400)
    provider.start_oauth.side_effect = lambda name, redirect_to: (
        f"https://id.example.com/auth/v1/authorize?provider={name}",
        GOOD_VERIFIER,
    )
    return provider


def _patch_lifespan(store: ProfileStore, provider: MagicMock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and provider double into app.state so TestClient
    routes see isolated components rather than a configured deployment.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.provider = provider
        app.state.recorder = AuditRecorder(store)
        app.state.resolver = SessionResolver(provider, ["service_role"], JWT_SECRET)
        app.state.synchronizer = ProfileSynchronizer(store, provider, app.state.recorder)
        app.state.reconciler = OAuthCallbackReconciler(
            provider,
            app.state.resolver,
            success_redirect="/",
            failure_redirect="/login",
            success_delay=1.5,
            failure_delay=3.0,
        )
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    provider: MagicMock
    store: ProfileStore


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Login is rate-limited per IP; every TestClient request comes from the same one."""
    limiter.reset()


@pytest.fixture
def provider() -> MagicMock:
    return fake_provider()


@pytest.fixture
def store() -> Generator[ProfileStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def api_client(store: ProfileStore, provider: MagicMock) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness over the real app with a patched lifespan.

    base_url uses localhost so TrustedHostMiddleware admits the requests.
    follow_redirects=False: tests assert on redirect Location headers.
    """
    app.router.lifespan_context = _patch_lifespan(store, provider)
    app.dependency_overrides[get_provider_client] = lambda: provider
    with TestClient(app, base_url="http://localhost", follow_redirects=False) as client:
        yield ApiHarness(client=client, provider=provider, store=store)
    app.dependency_overrides.pop(get_provider_client, None)
