"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every error carries a stable machine-readable `code` and the HTTP status the
API layer should answer with. api/main.py renders any AuthError into the
shared {"error": {"code", "message"}} envelope, so services raise these and
never touch fastapi.HTTPException.

Classification rules:
  - Configuration errors (OIDC off or incomplete) are fatal to the OIDC flow
    only. Local login is unaffected.
  - State errors always mean "start over" -- a state is never retried.
  - Provider errors wrap authlib / httpx / python-jose failures. The message is
    taken from the provider's structured payload when one exists.
  - Claims errors mean the provider is misconfigured or non-compliant, which is
    different from a transient provider failure.
  - Pending-approval is never reported as "invalid credentials".

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses pin code and status_code."""

    code = "auth_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequestError(AuthError):
    code = "invalid_request"
    status_code = 400


class InvalidCredentialsError(AuthError):
    code = "bad_credentials"
    status_code = 401


class OidcAccountError(InvalidCredentialsError):
    """Password login attempted on an account that has no password."""

    code = "oidc_account"


class PendingApprovalError(AuthError):
    code = "pending_approval"
    status_code = 403


class RegistrationDisabledError(AuthError):
    code = "registration_disabled"
    status_code = 403


class ForbiddenError(AuthError):
    code = "forbidden"
    status_code = 403


class NotFoundError(AuthError):
    code = "not_found"
    status_code = 404


class ConflictError(AuthError):
    code = "conflict"
    status_code = 409


class SettingsLockedError(AuthError):
    code = "settings_locked"
    status_code = 409


class InvalidRefreshTokenError(AuthError):
    code = "invalid_refresh_token"
    status_code = 401


class StateError(AuthError):
    code = "invalid_state"
    status_code = 400


class ExchangeCodeError(AuthError):
    code = "invalid_code"
    status_code = 400


class ClaimsError(AuthError):
    code = "invalid_claims"
    status_code = 400


class OidcConfigurationError(AuthError):
    code = "oidc_not_configured"
    status_code = 500


class ProviderError(AuthError):
    code = "oidc_provider_error"
    status_code = 502


def get_error_message(error: BaseException, fallback: str = "An unexpected error occurred") -> str:
    """Extract a user-facing message from an auth or provider error.

    AuthError messages are already user-facing. authlib's OAuthError carries
    the provider's `error` / `description`; httpx status errors may carry an
    OAuth error payload in the JSON body. Anything else falls back to str(exc)
    or the fallback -- never a traceback.
    """
    if isinstance(error, AuthError):
        return error.message

    candidates = [
        getattr(error, "description", None),
        getattr(error, "error_description", None),
        getattr(error, "error", None),
    ]
    response = getattr(error, "response", None)
    if response is not None:
        try:
            payload = response.json()
        except Exception:
            payload = None
        if isinstance(payload, dict):
            candidates.extend([payload.get("error_description"), payload.get("error")])
    cause = error.__cause__
    if cause is not None:
        candidates.extend([getattr(cause, "description", None), getattr(cause, "error", None)])

    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return str(error) or fallback
