"""
tests/conftest.py -- Shared test fixtures for the Anchor auth test suite.

This module provides:
  - _make_test_store(): an isolated in-memory credential store per test module
  - _patch_lifespan(): wires a test store (and optional fake IdP transport)
    into app.state, bypassing the real startup
  - FakeIdentityProvider: an httpx.MockTransport-backed OpenID provider with
    discovery, token, JWKS and userinfo endpoints
  - api_client: TestClient with an admin access token
  - oidc_api: TestClient whose OIDC client talks to a FakeIdentityProvider

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and LOGIN_RATE_LIMIT must be set before any api/auth/core import so
get_settings() auto-generates SECRET_KEY and integration suites do not trip
the per-IP credential rate limit.
"""

from __future__ import annotations

import asyncio
import base64
import os
import tempfile
import time
from collections.abc import Generator
from contextlib import asynccontextmanager
from urllib.parse import parse_qsl

# CRITICAL: environment first -- Settings is cached on first get_settings() call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="anchor-uploads-"))
for _var in ("OIDC_ENABLED", "OIDC_ISSUER_URL", "OIDC_CLIENT_ID", "OIDC_CLIENT_SECRET", "APP_URL"):
    os.environ.pop(_var, None)

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from api.main import app, build_components
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from core.config import get_settings

FAKE_ISSUER = "https://idp.example.test"
FAKE_CLIENT_ID = "anchor-web"
_FAKE_SIGNING_KEY = b"fake-idp-hmac-signing-key-for-tests-only"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (the calling module's name).
    """
    return UserStore(db_url=f"sqlite:///file:test_anchor_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(user_store: UserStore, transport: httpx.MockTransport | None = None):
    """Return an async context manager that replaces the real lifespan.

    Builds the same component graph as the production lifespan over the test
    store. The purge_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_components(app, get_settings(), user_store, http_transport=transport)
        app.state.oidc_states.start()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        await app.state.oidc_states.stop()

    return test_lifespan


def _create_admin(user_store: UserStore, email: str) -> tuple[str, str]:
    """Insert an active admin with password 'adminpass123'. Returns (user_id, access_token)."""
    admin = user_store.create_user(
        User(email=email, name="Test Admin", hashed_password=hash_password("adminpass123"), is_admin=True)
    )
    return admin.id, create_access_token(admin.id, admin.email, expire_seconds=3600)


def _enable_oidc(user_store: UserStore, client_secret: str = "provider-secret") -> None:
    """Store a database-managed OIDC config that points at the fake provider."""
    user_store.set_settings(
        {
            "oidc_enabled": "true",
            "oidc_provider_name": "Fake IdP",
            "oidc_issuer_url": FAKE_ISSUER,
            "oidc_client_id": FAKE_CLIENT_ID,
            "oidc_client_secret": client_secret,
        }
    )


# ---------------------------------------------------------------------------
# Fake identity provider
# ---------------------------------------------------------------------------


class FakeIdentityProvider:
    """In-process OpenID provider served through httpx.MockTransport.

    ID tokens are signed HS256 with a symmetric key published as an "oct" JWK,
    which python-jose verifies exactly like a provider's RSA key set.

    Mutate the attributes to shape the next responses; reset() restores the
    defaults. Every token endpoint request body is recorded in token_requests.
    """

    issuer = FAKE_ISSUER
    client_id = FAKE_CLIENT_ID

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.subject = "idp-user-1"
        self.email = "oidc.user@example.com"
        self.name = "Oidc User"
        self.picture: str | None = None
        self.access_token = "provider-access-token"
        self.userinfo_overrides: dict = {}
        self.id_token_overrides: dict = {}
        self.token_error: str | None = None
        self.omit_id_token = False
        self.discovery_status = 200
        self.token_requests: list[dict] = []

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def discovery(self) -> dict:
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "jwks_uri": f"{self.issuer}/jwks",
            "userinfo_endpoint": f"{self.issuer}/userinfo",
            "id_token_signing_alg_values_supported": ["HS256"],
        }

    def jwks(self) -> dict:
        k = base64.urlsafe_b64encode(_FAKE_SIGNING_KEY).rstrip(b"=").decode()
        return {"keys": [{"kty": "oct", "k": k, "alg": "HS256", "use": "sig"}]}

    def id_token(self) -> str:
        now = int(time.time())
        claims = {
            "iss": self.issuer,
            "aud": self.client_id,
            "sub": self.subject,
            "email": self.email,
            "name": self.name,
            "iat": now,
            "exp": now + 300,
            **self.id_token_overrides,
        }
        return jwt.encode(claims, _FAKE_SIGNING_KEY, algorithm="HS256", access_token=self.access_token)

    def userinfo(self) -> dict:
        info = {"sub": self.subject, "email": self.email, "name": self.name}
        if self.picture:
            info["picture"] = self.picture
        info.update(self.userinfo_overrides)
        return info

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            if self.discovery_status != 200:
                return httpx.Response(self.discovery_status, json={"error": "unavailable"})
            return httpx.Response(200, json=self.discovery())
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks())
        if path == "/token":
            form = dict(parse_qsl(request.content.decode(), keep_blank_values=True))
            self.token_requests.append(form)
            if self.token_error:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": self.token_error})
            body = {"access_token": self.access_token, "token_type": "Bearer", "expires_in": 300}
            if not self.omit_id_token:
                body["id_token"] = self.id_token()
            return httpx.Response(200, json=body)
        if path == "/userinfo":
            if request.headers.get("Authorization") != f"Bearer {self.access_token}":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo())
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    The admin exists before the client starts, so the next registration is
    never the first-user bootstrap.
    """
    user_store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    admin_id, token = _create_admin(user_store, "admin@example.com")

    app.router.lifespan_context = _patch_lifespan(user_store)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, token, admin_id

    user_store.close()


@pytest.fixture(scope="module")
def oidc_api(request) -> Generator[tuple[TestClient, FakeIdentityProvider, str], None, None]:
    """Yield (client, provider, admin_token) with OIDC enabled against a fake provider.

    follow_redirects=False is essential: the OIDC endpoints answer with 302s
    and the tests assert on the Location header.
    """
    user_store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    _, token = _create_admin(user_store, "oidc.admin@example.com")
    _enable_oidc(user_store)
    provider = FakeIdentityProvider()

    app.router.lifespan_context = _patch_lifespan(user_store, transport=provider.transport())

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, provider, token

    user_store.close()
