"""
api/routes/admin.py -- Admin settings and account approval endpoints.

Routes (all require_admin):
  GET    /api/admin/settings/oidc           -- OIDC settings incl. lock state and source
  PATCH  /api/admin/settings/oidc           -- update stored OIDC settings (409 when env-locked)
  GET    /api/admin/settings/registration   -- registration mode
  PATCH  /api/admin/settings/registration   -- set registration mode
  GET    /api/admin/users/pending           -- accounts awaiting approval
  POST   /api/admin/users/{id}/approve      -- pending -> active
  POST   /api/admin/users/{id}/reject       -- delete a pending account
  DELETE /api/admin/users/{id}              -- delete an account (never the last admin)

Security:
  The client secret is write-only: responses carry hasClientSecret, never the
  value. clearClientSecret=true turns the client into a public PKCE client.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    OidcAdminSettingsResponse,
    OidcSettingsPatch,
    RegistrationModePatch,
    RegistrationModeResponse,
    UserPayload,
)
from auth.dependencies import require_admin
from auth.models import User
from auth.oidc_config import OidcConfigResolver
from auth.service import AuthService

logger = logging.getLogger("anchor.api.admin")

router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _oidc_settings_response(config: OidcConfigResolver) -> JSONResponse:
    body = OidcAdminSettingsResponse.model_validate(config.get_admin_settings())
    return JSONResponse(content=body.model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@router.get("/admin/settings/oidc", response_model=OidcAdminSettingsResponse)
def get_oidc_settings(request: Request, current_user: User = Depends(require_admin)) -> JSONResponse:
    return _oidc_settings_response(request.app.state.oidc_config)


@router.patch("/admin/settings/oidc", response_model=OidcAdminSettingsResponse)
def update_oidc_settings(
    request: Request,
    body: OidcSettingsPatch,
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    """Persist OIDC settings. Raises SettingsLockedError (409) in environment-locked mode."""
    config: OidcConfigResolver = request.app.state.oidc_config
    config.update_settings(
        enabled=body.enabled,
        provider_name=body.provider_name,
        issuer_url=body.issuer_url,
        client_id=body.client_id,
        client_secret=body.client_secret,
        disable_internal_auth=body.disable_internal_auth,
        clear_client_secret=body.clear_client_secret,
    )
    logger.info("OIDC settings updated by user %s", current_user.id)
    return _oidc_settings_response(config)


@router.get("/admin/settings/registration", response_model=RegistrationModeResponse)
def get_registration_settings(
    request: Request, current_user: User = Depends(require_admin)
) -> RegistrationModeResponse:
    return RegistrationModeResponse(mode=_service(request).get_registration_mode())


@router.patch("/admin/settings/registration", response_model=RegistrationModeResponse)
def update_registration_settings(
    request: Request,
    body: RegistrationModePatch,
    current_user: User = Depends(require_admin),
) -> RegistrationModeResponse:
    mode = _service(request).set_registration_mode(body.mode.value)
    return RegistrationModeResponse(mode=mode)


# ---------------------------------------------------------------------------
# Account approval
# ---------------------------------------------------------------------------


@router.get("/admin/users/pending")
def list_pending_users(request: Request, current_user: User = Depends(require_admin)) -> JSONResponse:
    users = _service(request).list_pending_users()
    return JSONResponse(content=[UserPayload.from_user(u).model_dump(by_alias=True) for u in users])


@router.post("/admin/users/{user_id}/approve")
def approve_user(request: Request, user_id: str, current_user: User = Depends(require_admin)) -> JSONResponse:
    user = _service(request).approve_user(user_id)
    return JSONResponse(content=UserPayload.from_user(user).model_dump(by_alias=True))


@router.post("/admin/users/{user_id}/reject", status_code=204)
def reject_user(request: Request, user_id: str, current_user: User = Depends(require_admin)) -> Response:
    _service(request).reject_user(user_id)
    return Response(status_code=204)


@router.delete("/admin/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str, current_user: User = Depends(require_admin)) -> Response:
    """[M4] Refuses to delete the caller's own account or the last admin."""
    _service(request).delete_user(user_id, acting_user_id=current_user.id)
    return Response(status_code=204)
