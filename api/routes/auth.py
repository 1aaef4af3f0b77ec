"""
api/routes/auth.py -- Local authentication and session REST endpoints.

Routes:
  POST /api/auth/login              -- password login; returns a token pair
  POST /api/auth/register           -- create an account (201); tokens only when active
  POST /api/auth/refresh            -- rotate a refresh token
  GET  /api/auth/me                 -- current user (requires auth)
  POST /api/auth/change-password    -- change own password (requires auth)
  GET  /api/auth/registration-mode  -- current registration policy (public)
  GET  /api/auth/api-token          -- own API token, or null (requires auth)
  POST /api/auth/api-token/regenerate -- issue a new API token (requires auth)
  DELETE /api/auth/api-token        -- revoke the API token (requires auth)

Security:
  [H2] login, register and refresh are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AuthService.login() provides timing equalization -- never inline the
       lookup + bcrypt check here.
  [M5] Cache-Control: no-store on every response that carries tokens,
       API tokens included.

Handlers are sync (def): AuthService does blocking SQLAlchemy and bcrypt work,
so FastAPI runs them in its threadpool. AuthError raised by the service is
rendered by the handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    ApiTokenResponse,
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegistrationModeResponse,
    TokenPairResponse,
    UserPayload,
)
from auth.dependencies import get_current_user
from auth.models import AuthResult, User
from auth.service import AuthService

# Auth policy:
# - POST /api/auth/login:              public, rate limited
# - POST /api/auth/register:           public, rate limited, gated by registration mode
# - POST /api/auth/refresh:            public (the refresh token is the credential), rate limited
# - GET  /api/auth/registration-mode:  public -- the register page needs it before sign-in
# - GET  /api/auth/me:                 requires auth (get_current_user)
# - POST /api/auth/change-password:    requires auth (get_current_user)
# - /api/auth/api-token[/regenerate]: requires auth (get_current_user)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _auth_payload(result: AuthResult) -> dict:
    """Serialize an AuthResult. Token keys are omitted entirely for pending accounts."""
    payload: dict = {"user": UserPayload.from_user(result.user).model_dump(by_alias=True)}
    if result.tokens is not None:
        payload["access_token"] = result.tokens.access_token
        payload["refresh_token"] = result.tokens.refresh_token
    if result.message:
        payload["message"] = result.message
    return payload


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same "bad_credentials"
    error. OIDC-only accounts and pending accounts get their own codes so the
    client can tell the user what to do next.
    """
    result = _service(request).login(body.email, body.password)
    return _no_store(_auth_payload(result))


@limiter.limit(credential_rate_limit)
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password account.

    The first account becomes admin. In review mode later accounts are
    created pending and the response carries a message instead of tokens.
    """
    result = _service(request).register(body.email, body.password, body.name)
    return _no_store(_auth_payload(result), status_code=201)


@limiter.limit(credential_rate_limit)
@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    pair = _service(request).refresh_tokens(body.refresh_token)
    return _no_store(TokenPairResponse(access_token=pair.access_token, refresh_token=pair.refresh_token).model_dump())


@router.get("/auth/registration-mode", response_model=RegistrationModeResponse)
def registration_mode(request: Request) -> RegistrationModeResponse:
    return RegistrationModeResponse(mode=_service(request).get_registration_mode())


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the currently authenticated user."""
    return JSONResponse(content=UserPayload.from_user(current_user).model_dump(by_alias=True))


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    _service(request).change_password(current_user.id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed successfully")


@router.get("/auth/api-token", response_model=ApiTokenResponse)
def get_api_token(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the caller's API token; apiToken is null when none is issued."""
    token = _service(request).get_api_token(current_user.id)
    return _no_store(ApiTokenResponse(api_token=token).model_dump(by_alias=True))


@router.post("/auth/api-token/regenerate", response_model=ApiTokenResponse)
def regenerate_api_token(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Issue a new API token, replacing any previous one."""
    token = _service(request).regenerate_api_token(current_user.id)
    return _no_store(ApiTokenResponse(api_token=token).model_dump(by_alias=True))


@router.delete("/auth/api-token", response_model=ApiTokenResponse)
def revoke_api_token(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    _service(request).revoke_api_token(current_user.id)
    return _no_store(ApiTokenResponse(api_token=None).model_dump(by_alias=True))
