"""
auth/oidc_client.py -- Protocol client for the configured OpenID provider.

Built on authlib's AsyncOAuth2Client (httpx). Every public call resolves the
current config and re-runs discovery, so a settings change made in the admin
UI is picked up without a restart and there is no stale metadata cache.

Security notes:
  State: authlib's fetch_token() compares the state echoed on the callback URL
      with the value we issued and raises MismatchingStateException otherwise.

  PKCE: S256 only. The verifier never leaves the server; it is kept in the
      OIDC state store next to the state it belongs to.

  ID token: verified with python-jose against the provider's JWKS: signature,
      audience (our client_id), issuer, expiry, and at_hash when present.

  Client authentication at the token endpoint:
      secret configured  -> client_secret_post
      no secret (public) -> client_id plus an EMPTY client_secret in the body.
      Some providers reject public-client token requests that omit the
      client_secret parameter entirely, so "none" is not used.

Timeouts: every network call is bounded by Settings.oidc_http_timeout.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from authlib.common.security import generate_token
from authlib.common.urls import add_params_to_qs
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from jose import jwt
from starlette.concurrency import run_in_threadpool

from auth.errors import OidcConfigurationError, ProviderError
from auth.models import OidcConfig
from auth.oidc_config import OidcConfigResolver

logger = logging.getLogger("anchor.auth.oidc")

SCOPE = "openid email profile"
PUBLIC_CLIENT_AUTH_METHOD = "public_client_post"
_DEFAULT_ID_TOKEN_ALGS = ["RS256"]


def _encode_public_client_post(client, method, uri, headers, body):
    """Token-endpoint auth for public clients: client_id and an empty client_secret."""
    body = add_params_to_qs(body or "", [("client_id", client.client_id), ("client_secret", "")])
    if "Content-Length" in headers:
        headers["Content-Length"] = str(len(body))
    return uri, headers, body


@dataclass
class ProviderTokens:
    """Token endpoint response with the verified ID token claims."""

    access_token: str
    id_token: str
    claims: dict = field(default_factory=dict)
    refresh_token: str | None = None


class OidcProviderClient:
    """Discovery, authorization URL, code exchange and userinfo.

    Args:
        config:    Resolver for the current OIDC configuration.
        timeout:   Per-request timeout in seconds for provider calls.
        transport: Optional httpx transport. Tests pass httpx.MockTransport
                   to stand in for the identity provider.
    """

    def __init__(self, config: OidcConfigResolver, timeout: float = 10.0, transport=None) -> None:
        self._config = config
        self._timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # Random values
    # ------------------------------------------------------------------

    @staticmethod
    def generate_state() -> str:
        return generate_token(32)

    @staticmethod
    def generate_pkce() -> tuple[str, str]:
        """Return (code_verifier, code_challenge) for the S256 method."""
        code_verifier = generate_token(48)
        return code_verifier, create_s256_code_challenge(code_verifier)

    # ------------------------------------------------------------------
    # Session: resolved config + discovered metadata
    # ------------------------------------------------------------------

    def _build_client(self, config: OidcConfig) -> AsyncOAuth2Client:
        kwargs: dict = {"timeout": self._timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        auth_method = "client_secret_post" if config.client_secret else PUBLIC_CLIENT_AUTH_METHOD
        client = AsyncOAuth2Client(
            client_id=config.client_id,
            client_secret=config.client_secret,
            token_endpoint_auth_method=auth_method,
            scope=SCOPE,
            redirect_uri=self._config.callback_url,
            **kwargs,
        )
        if not config.client_secret:
            client.register_client_auth_method((PUBLIC_CLIENT_AUTH_METHOD, _encode_public_client_post))
        return client

    async def _discover(self, client: AsyncOAuth2Client, config: OidcConfig) -> dict:
        url = f"{config.issuer_url.rstrip('/')}/.well-known/openid-configuration"
        resp = await client.request("GET", url, withhold_token=True)
        resp.raise_for_status()
        metadata = resp.json()
        for key in ("authorization_endpoint", "token_endpoint", "jwks_uri"):
            if not metadata.get(key):
                raise ValueError(f"discovery document has no {key}")
        issuer = (metadata.get("issuer") or "").rstrip("/")
        if issuer != config.issuer_url.rstrip("/"):
            raise ValueError(f"discovery issuer {issuer!r} does not match configured issuer")
        return metadata

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[tuple[AsyncOAuth2Client, dict, OidcConfig]]:
        config = await run_in_threadpool(self._config.get_config)
        if not config.is_usable:
            raise OidcConfigurationError("OIDC is not properly configured")
        async with self._build_client(config) as client:
            try:
                metadata = await self._discover(client, config)
            except Exception as exc:
                logger.error("Failed to initialize OIDC configuration: %s", exc)
                raise OidcConfigurationError(
                    "Failed to initialize OIDC configuration. Check your OIDC settings."
                ) from exc
            yield client, metadata, config

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def build_authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        params: dict = {}
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        async with self._session() as (client, metadata, _):
            url, _ = client.create_authorization_url(metadata["authorization_endpoint"], state=state, **params)
        return url

    async def exchange_code_for_tokens(
        self, callback_url: str, expected_state: str, code_verifier: str | None = None
    ) -> ProviderTokens:
        """Redeem the authorization code on `callback_url` and verify the ID token.

        Raises authlib, httpx or python-jose errors on failure; the OIDC
        service layer classifies them.
        """
        extra: dict = {}
        if code_verifier:
            extra["code_verifier"] = code_verifier
        async with self._session() as (client, metadata, config):
            token = await client.fetch_token(
                metadata["token_endpoint"],
                authorization_response=callback_url,
                state=expected_state,
                **extra,
            )
            id_token = token.get("id_token")
            if not id_token:
                raise ProviderError("OIDC provider did not return an ID token")
            jwks_resp = await client.request("GET", metadata["jwks_uri"], withhold_token=True)
            jwks_resp.raise_for_status()
            algorithms = [
                alg
                for alg in metadata.get("id_token_signing_alg_values_supported") or _DEFAULT_ID_TOKEN_ALGS
                if alg.lower() != "none"
            ]
            claims = jwt.decode(
                id_token,
                jwks_resp.json(),
                algorithms=algorithms,
                audience=config.client_id,
                issuer=metadata["issuer"],
                access_token=token.get("access_token"),
            )
        return ProviderTokens(
            access_token=token["access_token"],
            id_token=id_token,
            claims=claims,
            refresh_token=token.get("refresh_token"),
        )

    # ------------------------------------------------------------------
    # Userinfo
    # ------------------------------------------------------------------

    async def fetch_user_info(self, access_token: str, expected_subject: str | None = None) -> dict | None:
        """Call the userinfo endpoint with a Bearer token.

        Returns None on any failure, and when expected_subject is given but the
        userinfo `sub` differs (OpenID Connect Core 5.3.2).
        """
        try:
            async with self._session() as (client, metadata, _):
                endpoint = metadata.get("userinfo_endpoint")
                if not endpoint:
                    logger.warning("OIDC provider does not advertise a userinfo endpoint")
                    return None
                resp = await client.request(
                    "GET",
                    endpoint,
                    headers={"Authorization": f"Bearer {access_token}"},
                    withhold_token=True,
                )
                resp.raise_for_status()
                info = resp.json()
        except Exception as exc:
            logger.warning("Failed to fetch userinfo: %s", exc)
            return None

        if not isinstance(info, dict) or not info.get("sub"):
            logger.warning("Userinfo response has no subject")
            return None
        if expected_subject is not None and info["sub"] != expected_subject:
            logger.warning("Userinfo subject does not match the ID token subject")
            return None
        return info
