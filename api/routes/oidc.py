"""
api/routes/oidc.py -- OpenID Connect sign-in endpoints.

Routes:
  GET  /api/auth/oidc/config           -- public config projection (login page)
  GET  /api/auth/oidc/initiate         -- 302 to the provider (400 when OIDC is off)
  GET  /api/auth/oidc/callback         -- provider redirect target; ALWAYS 302s
                                          to {APP_URL}/login with ?code=&redirect=
                                          on success or ?error= on failure
  POST /api/auth/oidc/exchange         -- one-time code -> token pair + user
  POST /api/auth/oidc/exchange/mobile  -- provider access token -> token pair + user

Security:
  Tokens never appear in a URL. The callback hands the browser an opaque,
  60-second, single-use exchange code; the frontend trades it for tokens with
  a POST.
  [M5] Cache-Control: no-store on both exchange responses.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    OidcExchangeRequest,
    OidcExchangeResponse,
    OidcMobileExchangeRequest,
    OidcPublicConfigResponse,
)
from auth.errors import AuthError, get_error_message
from auth.oidc import OidcService
from auth.oidc_config import OidcConfigResolver

logger = logging.getLogger("anchor.api.oidc")

router = APIRouter()


def _login_redirect(config: OidcConfigResolver, **params: str) -> RedirectResponse:
    return RedirectResponse(f"{config.app_url}/login?{urlencode(params)}", status_code=302)


def _no_store(content: dict) -> JSONResponse:
    resp = JSONResponse(content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/oidc/config", response_model=OidcPublicConfigResponse)
def oidc_config(request: Request) -> JSONResponse:
    """Return the public OIDC configuration. Never includes the client secret."""
    config: OidcConfigResolver = request.app.state.oidc_config
    body = OidcPublicConfigResponse.model_validate(config.get_public_config())
    return JSONResponse(content=body.model_dump(by_alias=True))


@router.get("/auth/oidc/initiate")
async def initiate(request: Request, redirect: Optional[str] = None) -> RedirectResponse:
    """Start the authorization-code + PKCE flow.

    An invalid `redirect` is replaced with "/" rather than rejected, so a
    stale bookmark never blocks sign-in.
    """
    oidc: OidcService = request.app.state.oidc_service
    url = await oidc.get_authorization_url(redirect)
    return RedirectResponse(url, status_code=302)


@router.get("/auth/oidc/callback")
async def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
) -> RedirectResponse:
    """Finish the provider round trip and hand the browser a one-time code."""
    config: OidcConfigResolver = request.app.state.oidc_config
    oidc: OidcService = request.app.state.oidc_service

    if error:
        if state:
            request.app.state.oidc_states.delete_state(state)
        logger.warning("OIDC provider returned an error: %s", error)
        return _login_redirect(config, error=error_description or error)

    if not code or not state:
        return _login_redirect(config, error="Missing authorization code or state")

    # authlib reads code and state from the query; the base must be our
    # registered redirect_uri, not whatever host the proxy forwarded.
    callback_url = f"{config.callback_url}?{request.url.query}"
    try:
        result = await oidc.handle_callback(callback_url, state)
    except AuthError as exc:
        return _login_redirect(config, error=get_error_message(exc, "Failed to process OIDC callback"))

    exchange_code = oidc.create_exchange_code(result)
    return _login_redirect(config, code=exchange_code, redirect=result.redirect_url or "/")


@limiter.limit(credential_rate_limit)
@router.post("/auth/oidc/exchange", response_model=OidcExchangeResponse)
def exchange(request: Request, body: OidcExchangeRequest) -> JSONResponse:
    """Redeem a one-time exchange code. A code works exactly once."""
    oidc: OidcService = request.app.state.oidc_service
    result = oidc.exchange_code(body.code)
    return _no_store(OidcExchangeResponse.from_result(result).model_dump(by_alias=True))


@limiter.limit(credential_rate_limit)
@router.post("/auth/oidc/exchange/mobile", response_model=OidcExchangeResponse)
async def exchange_mobile(request: Request, body: OidcMobileExchangeRequest) -> JSONResponse:
    """Trade an access token a native app obtained from the provider for an Anchor session."""
    oidc: OidcService = request.app.state.oidc_service
    result = await oidc.exchange_mobile_token(body.access_token)
    return _no_store(OidcExchangeResponse.from_result(result).model_dump(by_alias=True))
