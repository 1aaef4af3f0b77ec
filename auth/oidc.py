"""
auth/oidc.py -- OIDC sign-in orchestration.

Flow (browser):
  1. get_authorization_url(redirect)  -> state + PKCE stored, provider URL returned
  2. provider redirects to /api/auth/oidc/callback?code=&state=
  3. handle_callback()                -> state consumed FIRST (single use), code
                                         exchanged, userinfo fetched with the
                                         ID token subject, identity reconciled,
                                         pending users blocked, token pair minted
  4. create_exchange_code(result)     -> the browser is redirected with an
                                         opaque one-time code, never a token
  5. exchange_code(code)              -> tokens handed to the frontend once

Flow (mobile):
  exchange_mobile_token(access_token) -> the app signed in with the provider
      itself; userinfo from the configured issuer is the identity source.

Error classification:
  AuthError subclasses pass through unchanged. Anything else raised while
  talking to the provider or reconciling (authlib OAuthError, httpx errors,
  python-jose JWTError, SQLAlchemyError) is logged and re-raised as
  ProviderError with the provider's own error_description when it sent one.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
import secrets
from urllib.parse import urlsplit

from starlette.concurrency import run_in_threadpool

from auth.errors import (
    AuthError,
    ClaimsError,
    ExchangeCodeError,
    InvalidCredentialsError,
    InvalidRequestError,
    PendingApprovalError,
    ProviderError,
    StateError,
    get_error_message,
)
from auth.models import OidcAuthResult, OidcClaims, User
from auth.oidc_client import OidcProviderClient
from auth.oidc_config import OidcConfigResolver
from auth.oidc_state import OidcStateStore
from auth.oidc_user import IdentityReconciler
from auth.service import PENDING_LOGIN_MESSAGE, AuthService

logger = logging.getLogger("anchor.auth.oidc")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MAX_EMAIL_LENGTH = 255

_CALLBACK_FALLBACK_MESSAGE = "Failed to process OIDC callback. Please try again from the login page."


def _is_valid_email(value) -> bool:
    return isinstance(value, str) and len(value) <= _MAX_EMAIL_LENGTH and bool(_EMAIL_RE.match(value))


def _first_text(*values) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _origin(url: str) -> tuple[str, str] | None:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return parts.scheme.lower(), parts.netloc.lower()


class OidcService:
    """Coordinates state store, provider client, reconciler and token minting."""

    def __init__(
        self,
        config: OidcConfigResolver,
        client: OidcProviderClient,
        states: OidcStateStore,
        reconciler: IdentityReconciler,
        auth_service: AuthService,
    ) -> None:
        self._config = config
        self._client = client
        self._states = states
        self._reconciler = reconciler
        self._auth = auth_service

    # ------------------------------------------------------------------
    # Browser flow
    # ------------------------------------------------------------------

    async def get_authorization_url(self, redirect_url: str | None = None) -> str:
        if not await run_in_threadpool(self._config.is_enabled):
            raise InvalidRequestError("OIDC is not enabled")
        redirect = self.validate_redirect_url(redirect_url, fallback="/")
        state = self._client.generate_state()
        code_verifier, code_challenge = self._client.generate_pkce()
        self._states.store_state(state, code_verifier, redirect)
        try:
            return await self._client.build_authorization_url(state, code_challenge)
        except AuthError:
            self._states.delete_state(state)
            raise

    async def handle_callback(self, callback_url: str, state: str) -> OidcAuthResult:
        """Complete the authorization-code flow for the callback at `callback_url`.

        The pending state is consumed before anything else, so a replayed
        callback fails with StateError even if the first attempt failed later.
        """
        pending = self._states.consume_state(state) if state else None
        if pending is None:
            raise StateError("Invalid or expired state")

        try:
            tokens = await self._client.exchange_code_for_tokens(callback_url, pending.state, pending.code_verifier)
            userinfo = await self._client.fetch_user_info(tokens.access_token, tokens.claims.get("sub"))
            claims = self.extract_user_claims(tokens.claims, userinfo)
            user = await run_in_threadpool(self._reconciler.find_or_create_user, claims)
            result = await self._issue(user, self.validate_redirect_url(pending.redirect_url, fallback="/"))
        except AuthError as exc:
            logger.warning("OIDC callback rejected: %s", exc.message)
            raise
        except Exception as exc:
            logger.error("OIDC callback error: %s", exc, exc_info=True)
            raise ProviderError(f"OIDC provider error: {get_error_message(exc, _CALLBACK_FALLBACK_MESSAGE)}") from exc
        logger.info("OIDC sign-in completed for user %s", result.user.id)
        return result

    def create_exchange_code(self, result: OidcAuthResult) -> str:
        code = secrets.token_hex(32)
        self._states.store_exchange_result(code, result)
        return code

    def exchange_code(self, code: str) -> OidcAuthResult:
        result = self._states.consume_exchange_code(code) if code else None
        if result is None:
            raise ExchangeCodeError("Invalid or expired login code. Please sign in again from the login page.")
        return result

    # ------------------------------------------------------------------
    # Mobile flow
    # ------------------------------------------------------------------

    async def exchange_mobile_token(self, access_token: str) -> OidcAuthResult:
        """Trade a provider access token obtained by a native app for an Anchor session.

        The token is only trusted as far as the configured issuer's userinfo
        endpoint accepts it. No ID token is involved.
        """
        if not await run_in_threadpool(self._config.is_enabled):
            raise InvalidRequestError("OIDC is not enabled")
        userinfo = await self._client.fetch_user_info(access_token)
        if userinfo is None:
            raise InvalidCredentialsError("Invalid or expired OIDC token. Please sign in again.")
        claims = self.extract_user_claims({}, userinfo)
        try:
            user = await run_in_threadpool(self._reconciler.find_or_create_user, claims)
            result = await self._issue(user, "/")
        except AuthError:
            raise
        except Exception as exc:
            logger.error("OIDC mobile exchange error: %s", exc, exc_info=True)
            raise ProviderError(f"OIDC provider error: {get_error_message(exc, _CALLBACK_FALLBACK_MESSAGE)}") from exc
        logger.info("OIDC mobile sign-in completed for user %s", result.user.id)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _issue(self, user: User, redirect_url: str) -> OidcAuthResult:
        if user.is_pending:
            raise PendingApprovalError(PENDING_LOGIN_MESSAGE)
        pair = await run_in_threadpool(self._auth.create_token_pair, user.id, user.email)
        return OidcAuthResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user=user,
            redirect_url=redirect_url,
        )

    @staticmethod
    def extract_user_claims(id_token_claims: dict | None, userinfo: dict | None) -> OidcClaims:
        """Merge userinfo and ID token claims. Userinfo wins field by field."""
        id_claims = id_token_claims or {}
        info = userinfo or {}

        email = _first_text(info.get("email"), id_claims.get("email"))
        subject = _first_text(info.get("sub"), id_claims.get("sub"))
        if not email or not subject:
            raise ClaimsError("OIDC provider did not return required claims (email, sub)")
        if not _is_valid_email(email):
            raise ClaimsError("OIDC provider returned an invalid email claim")

        name = _first_text(
            info.get("name"),
            id_claims.get("name"),
            info.get("preferred_username"),
            id_claims.get("preferred_username"),
        ) or email.split("@")[0]
        picture = _first_text(info.get("picture"), id_claims.get("picture"))
        return OidcClaims(subject=subject, email=email, name=name, picture=picture)

    def validate_redirect_url(self, url: str | None, fallback: str | None = None) -> str | None:
        """Allow a local path or a same-origin absolute URL; anything else is refused.

        Returns `fallback` for empty or refused input; with no fallback a
        refused URL raises InvalidRequestError.
        """
        candidate = (url or "").strip()
        if not candidate:
            return fallback
        if candidate.startswith("/") and "//" not in candidate and "\\" not in candidate:
            return candidate
        if not candidate.startswith("/"):
            target = _origin(candidate)
            if target is not None and target == _origin(self._config.app_url):
                return candidate
        logger.warning("Rejected redirect URL: %s", candidate)
        if fallback is not None:
            return fallback
        raise InvalidRequestError("Invalid redirect URL")
