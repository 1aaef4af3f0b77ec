"""
API request and response models for the Anchor auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire conventions (shared with the web and mobile clients):
  - token fields are snake_case: access_token, refresh_token
  - everything else is camelCase: isAdmin, profileImage, redirectUrl, ...
  Models that speak camelCase inherit _CamelModel and are serialized with
  model_dump(by_alias=True).

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import OidcAuthResult, User
from auth.tokens import PASSWORD_MAX_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

# bcrypt refuses passwords over 72 bytes. Field lengths count characters, so
# new passwords are also checked on their UTF-8 byte length.
PASSWORD_MAX_LENGTH = 72
PASSWORD_MIN_LENGTH = 8


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes when UTF-8 encoded")
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RegistrationModeEnum(str, Enum):
    disabled = "disabled"
    enabled = "enabled"
    review = "review"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RegisterRequest(BaseModel):
    """Request body for POST /api/auth/register."""

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    name: str = Field(min_length=1, max_length=100)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class RefreshRequest(BaseModel):
    """Request body for POST /api/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=256)


class ChangePasswordRequest(_CamelModel):
    """Request body for POST /api/auth/change-password ({currentPassword, newPassword})."""

    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("new_password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class OidcExchangeRequest(BaseModel):
    """Request body for POST /api/auth/oidc/exchange."""

    code: str = Field(min_length=1, max_length=128)


class OidcMobileExchangeRequest(BaseModel):
    """Request body for POST /api/auth/oidc/exchange/mobile."""

    access_token: str = Field(min_length=1, max_length=8192)


class OidcSettingsPatch(_CamelModel):
    """Request body for PATCH /api/admin/settings/oidc. Omitted fields are left unchanged."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    enabled: Optional[bool] = None
    provider_name: Optional[str] = Field(default=None, max_length=100)
    issuer_url: Optional[str] = Field(default=None, max_length=2048, pattern=r"^https?://\S+$")
    client_id: Optional[str] = Field(default=None, max_length=255)
    client_secret: Optional[str] = Field(default=None, max_length=1024)
    clear_client_secret: bool = False
    disable_internal_auth: Optional[bool] = None


class RegistrationModePatch(BaseModel):
    """Request body for PATCH /api/admin/settings/registration."""

    mode: RegistrationModeEnum


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserPayload(_CamelModel):
    """Public projection of a User. Never includes the password hash or OIDC subject."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    email: str
    name: str
    profile_image: Optional[str] = None
    is_admin: bool
    status: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserPayload":
        """Factory Method: the User -> payload mapping lives next to the payload."""
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            profile_image=user.profile_image,
            is_admin=user.is_admin,
            status=user.status,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthResponse(BaseModel):
    """Response for login and register. Tokens are absent for pending registrations."""

    model_config = ConfigDict(frozen=True)

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user: UserPayload
    message: Optional[str] = None


class TokenPairResponse(BaseModel):
    """Response for POST /api/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str


class OidcExchangeResponse(_CamelModel):
    """Response for the OIDC exchange endpoints."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    access_token: str = Field(alias="access_token")
    refresh_token: str = Field(alias="refresh_token")
    user: UserPayload
    redirect_url: str = "/"

    @classmethod
    def from_result(cls, result: OidcAuthResult) -> "OidcExchangeResponse":
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            user=UserPayload.from_user(result.user),
            redirect_url=result.redirect_url,
        )


class OidcPublicConfigResponse(_CamelModel):
    """Response for GET /api/auth/oidc/config."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    enabled: bool
    provider_name: str
    issuer_url: Optional[str] = None
    client_id: Optional[str] = None
    disable_internal_auth: bool


class OidcAdminSettingsResponse(OidcPublicConfigResponse):
    """Response for GET/PATCH /api/admin/settings/oidc. has_client_secret only; never the secret."""

    has_client_secret: bool
    is_locked: bool
    source: str


class RegistrationModeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: RegistrationModeEnum


class ApiTokenResponse(_CamelModel):
    """Response for the /api/auth/api-token endpoints ({"apiToken": ...})."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    api_token: Optional[str] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
