"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, services and routes do the work.

Persisted: User, RefreshToken.
Memory-only (auth/oidc_state.py): PendingState, ExchangeResult.
Computed views: OidcConfig, OidcClaims, TokenPair, AuthResult.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# User.status values. "pending" accounts exist but never receive a token pair.
STATUS_ACTIVE = "active"
STATUS_PENDING = "pending"

# Registration policy values, shared by password registration and OIDC
# auto-provisioning (see auth/provisioning.py).
REGISTRATION_DISABLED = "disabled"
REGISTRATION_ENABLED = "enabled"
REGISTRATION_REVIEW = "review"
REGISTRATION_MODES = (REGISTRATION_DISABLED, REGISTRATION_ENABLED, REGISTRATION_REVIEW)

DEFAULT_PROVIDER_NAME = "OIDC Provider"


@dataclass
class User:
    """An Anchor account.

    email is stored lower-cased; the store normalizes on every write and lookup.

    hashed_password is None for OIDC-only users (they have no local password).
    oidc_subject is None until the user signs in through OIDC for the first
    time. An account always has at least one of the two.

    api_token is a long-lived credential for scripts, sent as X-API-Key. It
    is shown to its owner on request, so it is stored as issued.

    profile_image is either a local path under /uploads/profiles/ or an
    external https URL taken from the provider's picture claim.
    """

    email: str
    name: str
    id: str | None = None
    hashed_password: str | None = None  # None = OIDC-only user
    oidc_subject: str | None = None  # provider's stable user ID
    profile_image: str | None = None
    is_admin: bool = False
    status: str = STATUS_ACTIVE  # "active" | "pending"
    api_token: str | None = field(default=None, repr=False)  # None = no API token issued
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING


@dataclass
class RefreshToken:
    """A long-lived session credential. Valid for exactly one refresh."""

    token: str
    user_id: str
    expires_at: str  # ISO 8601, UTC
    id: int | None = None
    created_at: str | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    """Outcome of login/register: the user plus tokens when the account is active.

    tokens is None for a registration that landed in review (status=pending);
    message then explains why no session was issued.
    """

    user: User
    tokens: TokenPair | None = None
    message: str | None = None


@dataclass
class OidcClaims:
    """Verified external identity, merged once from userinfo and ID token claims.

    Precedence: userinfo wins over ID token claims for every field; name
    falls back to preferred_username and then to the email local-part.
    """

    subject: str
    email: str
    name: str
    picture: str | None = None


@dataclass
class OidcConfig:
    """Resolved OIDC configuration for a single call.

    client_secret is excluded from repr so the config can be logged safely;
    it is never returned to API callers (see has_client_secret).
    """

    enabled: bool
    provider_name: str = DEFAULT_PROVIDER_NAME
    issuer_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    disable_internal_auth: bool = False
    locked: bool = False
    source: str = "default"  # "env" | "database" | "default"

    @property
    def is_usable(self) -> bool:
        """Enabled AND complete. Enabled-but-incomplete is treated as off."""
        return self.enabled and bool(self.issuer_url) and bool(self.client_id)

    @property
    def has_client_secret(self) -> bool:
        return bool(self.client_secret)


@dataclass
class PendingState:
    """CSRF/PKCE context for one authorization request. Single-use."""

    state: str
    expires_at: float  # store clock (monotonic seconds)
    code_verifier: str | None = None
    redirect_url: str | None = None


@dataclass
class OidcAuthResult:
    """A completed OIDC sign-in. Held behind a one-time exchange code."""

    access_token: str
    refresh_token: str
    user: User
    redirect_url: str = "/"
