"""
tests/test_oidc_service.py -- Unit tests for auth/oidc.py (OidcService).

Collaborators are mocks; the state store is real so single-use semantics are
exercised end to end.

Covers:
  - extract_user_claims(): precedence, name fallbacks, email validation
  - validate_redirect_url(): local paths, same-origin URLs, open-redirect
    attempts, fallback handling
  - get_authorization_url(): disabled OIDC, state stored with PKCE verifier
  - handle_callback(): state consumed first, pending users blocked,
    non-auth errors wrapped as ProviderError
  - exchange codes are single use
  - mobile exchange: rejected token, pending user
"""

from __future__ import annotations

import threading
from unittest.mock import AsyncMock, MagicMock

import pytest
from jose import JWTError

from auth.errors import (
    ClaimsError,
    ExchangeCodeError,
    InvalidCredentialsError,
    InvalidRequestError,
    OidcConfigurationError,
    PendingApprovalError,
    ProviderError,
    StateError,
)
from auth.models import TokenPair, User
from auth.oidc import OidcService
from auth.oidc_client import ProviderTokens
from auth.oidc_state import OidcStateStore

APP_URL = "https://notes.example.com"


def _user(status: str = "active") -> User:
    return User(id="user-1", email="person@example.com", name="Person", status=status, oidc_subject="sub-1")


@pytest.fixture
def states() -> OidcStateStore:
    return OidcStateStore()


@pytest.fixture
def client():
    c = MagicMock()
    c.generate_state.return_value = "state-1"
    c.generate_pkce.return_value = ("verifier-1", "challenge-1")
    c.build_authorization_url = AsyncMock(return_value="https://idp.example.com/authorize?state=state-1")
    c.exchange_code_for_tokens = AsyncMock(
        return_value=ProviderTokens(
            access_token="provider-access",
            id_token="id-token",
            claims={"sub": "sub-1", "email": "person@example.com", "name": "From ID Token"},
        )
    )
    c.fetch_user_info = AsyncMock(return_value={"sub": "sub-1", "email": "person@example.com", "name": "Person"})
    return c


@pytest.fixture
def reconciler():
    r = MagicMock()
    r.find_or_create_user.return_value = _user()
    return r


@pytest.fixture
def service(states, client, reconciler) -> OidcService:
    config = MagicMock()
    config.is_enabled.return_value = True
    config.app_url = APP_URL
    auth_service = MagicMock()
    auth_service.create_token_pair.return_value = TokenPair(access_token="access", refresh_token="refresh")
    return OidcService(config, client, states, reconciler, auth_service)


class TestExtractUserClaims:
    def test_userinfo_wins(self):
        claims = OidcService.extract_user_claims(
            {"sub": "sub-1", "email": "id@example.com", "name": "ID Name", "picture": "https://a/id.png"},
            {"sub": "sub-1", "email": "info@example.com", "name": "Info Name"},
        )
        assert claims.email == "info@example.com"
        assert claims.name == "Info Name"
        assert claims.picture == "https://a/id.png", "Fields missing from userinfo fall back to the ID token"

    def test_name_falls_back_to_preferred_username(self):
        claims = OidcService.extract_user_claims({}, {"sub": "s", "email": "a@b.co", "preferred_username": "ab"})
        assert claims.name == "ab"

    def test_name_falls_back_to_email_local_part(self):
        claims = OidcService.extract_user_claims({"sub": "s", "email": "jane.doe@b.co"}, None)
        assert claims.name == "jane.doe"

    @pytest.mark.parametrize(
        "id_claims, userinfo",
        [
            ({"sub": "s"}, {}),
            ({"email": "a@b.co"}, {}),
            ({}, None),
        ],
    )
    def test_missing_required_claims(self, id_claims, userinfo):
        with pytest.raises(ClaimsError, match="required claims"):
            OidcService.extract_user_claims(id_claims, userinfo)

    @pytest.mark.parametrize("email", ["not-an-email", "a@b", "a b@c.de", "x" * 250 + "@example.com"])
    def test_invalid_email(self, email):
        with pytest.raises(ClaimsError, match="invalid email"):
            OidcService.extract_user_claims({"sub": "s", "email": email}, None)


class TestValidateRedirectUrl:
    @pytest.mark.parametrize("url", ["/", "/notes/42", "/notes?tab=shared"])
    def test_local_paths_allowed(self, service, url):
        assert service.validate_redirect_url(url) == url

    def test_same_origin_absolute_url_allowed(self, service):
        assert service.validate_redirect_url(f"{APP_URL}/notes") == f"{APP_URL}/notes"

    @pytest.mark.parametrize(
        "url",
        [
            "//evil.example.com/x",
            "/\\evil.example.com",
            "https://evil.example.com/notes",
            "http://notes.example.com/notes",
            "javascript:alert(1)",
            "/notes//evil",
        ],
    )
    def test_rejected(self, service, url):
        with pytest.raises(InvalidRequestError):
            service.validate_redirect_url(url)
        assert service.validate_redirect_url(url, fallback="/") == "/"

    def test_empty_returns_fallback(self, service):
        assert service.validate_redirect_url(None, fallback="/") == "/"
        assert service.validate_redirect_url("  ") is None


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_disabled(self, service):
        service._config.is_enabled.return_value = False
        with pytest.raises(InvalidRequestError, match="not enabled"):
            await service.get_authorization_url("/notes")

    @pytest.mark.asyncio
    async def test_state_stored_with_verifier_and_redirect(self, service, states, client):
        url = await service.get_authorization_url("/notes")
        assert url.startswith("https://idp.example.com/authorize")
        client.build_authorization_url.assert_awaited_once_with("state-1", "challenge-1")
        pending = states.get_state("state-1")
        assert pending.code_verifier == "verifier-1"
        assert pending.redirect_url == "/notes"

    @pytest.mark.asyncio
    async def test_invalid_redirect_replaced(self, service, states):
        await service.get_authorization_url("https://evil.example.com")
        assert states.get_state("state-1").redirect_url == "/"

    @pytest.mark.asyncio
    async def test_discovery_failure_discards_state(self, service, states, client):
        client.build_authorization_url.side_effect = OidcConfigurationError("Failed to initialize")
        with pytest.raises(OidcConfigurationError):
            await service.get_authorization_url()
        assert states.get_state("state-1") is None


class TestCallback:
    @pytest.mark.asyncio
    async def test_success(self, service, states, client, reconciler):
        states.store_state("state-1", "verifier-1", "/notes/7")
        result = await service.handle_callback("https://cb?code=c&state=state-1", "state-1")

        assert result.access_token == "access"
        assert result.redirect_url == "/notes/7"
        client.exchange_code_for_tokens.assert_awaited_once_with(
            "https://cb?code=c&state=state-1", "state-1", "verifier-1"
        )
        client.fetch_user_info.assert_awaited_once_with("provider-access", "sub-1")
        claims = reconciler.find_or_create_user.call_args.args[0]
        assert claims.name == "Person"

    @pytest.mark.asyncio
    async def test_unknown_state(self, service, client):
        with pytest.raises(StateError):
            await service.handle_callback("https://cb?code=c&state=x", "x")
        client.exchange_code_for_tokens.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_state_consumed_even_when_exchange_fails(self, service, states, client):
        states.store_state("state-1", "verifier-1", "/")
        client.exchange_code_for_tokens.side_effect = JWTError("Signature verification failed.")
        with pytest.raises(ProviderError, match="OIDC provider error"):
            await service.handle_callback("https://cb", "state-1")
        with pytest.raises(StateError):
            await service.handle_callback("https://cb", "state-1")

    @pytest.mark.asyncio
    async def test_pending_user_gets_no_tokens(self, service, states, reconciler):
        reconciler.find_or_create_user.return_value = _user(status="pending")
        states.store_state("state-1", "v", "/")
        with pytest.raises(PendingApprovalError):
            await service.handle_callback("https://cb", "state-1")
        service._auth.create_token_pair.assert_not_called()

    @pytest.mark.asyncio
    async def test_userinfo_failure_falls_back_to_id_token_claims(self, service, states, client, reconciler):
        client.fetch_user_info.return_value = None
        states.store_state("state-1", "v", "/")
        await service.handle_callback("https://cb", "state-1")
        claims = reconciler.find_or_create_user.call_args.args[0]
        assert claims.name == "From ID Token"


class TestExchangeCode:
    @pytest.mark.asyncio
    async def test_code_single_use(self, service, states):
        states.store_state("state-1", "v", "/")
        result = await service.handle_callback("https://cb", "state-1")
        code = service.create_exchange_code(result)
        assert len(code) == 64

        assert service.exchange_code(code).access_token == "access"
        with pytest.raises(ExchangeCodeError):
            service.exchange_code(code)

    def test_empty_code(self, service):
        with pytest.raises(ExchangeCodeError):
            service.exchange_code("")


class TestMobileExchange:
    @pytest.mark.asyncio
    async def test_success(self, service, client):
        result = await service.exchange_mobile_token("mobile-access")
        client.fetch_user_info.assert_awaited_once_with("mobile-access")
        assert result.refresh_token == "refresh"
        assert result.redirect_url == "/"

    @pytest.mark.asyncio
    async def test_rejected_token(self, service, client):
        client.fetch_user_info.return_value = None
        with pytest.raises(InvalidCredentialsError):
            await service.exchange_mobile_token("bad")

    @pytest.mark.asyncio
    async def test_disabled(self, service):
        service._config.is_enabled.return_value = False
        with pytest.raises(InvalidRequestError):
            await service.exchange_mobile_token("any")

    @pytest.mark.asyncio
    async def test_pending_user(self, service, reconciler):
        reconciler.find_or_create_user.return_value = _user(status="pending")
        with pytest.raises(PendingApprovalError):
            await service.exchange_mobile_token("mobile-access")


class TestConfigReadsOffEventLoop:
    """is_enabled() reads the settings table, so it runs in the threadpool."""

    @staticmethod
    def _record_thread(service, seen: list) -> None:
        def is_enabled():
            seen.append(threading.get_ident())
            return True

        service._config.is_enabled.side_effect = is_enabled

    @pytest.mark.asyncio
    async def test_initiate(self, service):
        seen: list = []
        self._record_thread(service, seen)
        await service.get_authorization_url("/notes")
        assert seen and threading.get_ident() not in seen

    @pytest.mark.asyncio
    async def test_mobile_exchange(self, service):
        seen: list = []
        self._record_thread(service, seen)
        await service.exchange_mobile_token("mobile-access")
        assert seen and threading.get_ident() not in seen
