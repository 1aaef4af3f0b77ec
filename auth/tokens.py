"""
auth/tokens.py -- JWT access tokens, refresh and API token strings, password hashing.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are short-lived (default 15 min)
       and carry {sub: user_id, email, exp}. Verification returns None on any
       failure -- the dependency layer turns that into a 401.

  Refresh tokens: opaque, 64 random bytes hex-encoded (512 bits). They are
       stored server-side (auth/store.py) and are valid for exactly one use;
       auth/service.py owns the rotation logic.

  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
       brute-force expensive. The _DUMMY_HASH constant enables timing
       equalization in AuthService.login() so response time does not reveal
       whether an email is registered [C1].

  API tokens: anc_ + secrets.token_hex(32), one per user, sent as X-API-Key.
       auth/service.py owns issue and revoke.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup [M6].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidRequestError
from core.config import get_settings

logger = logging.getLogger("anchor.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

PASSWORD_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt accepts at most 72 bytes. The API models reject longer passwords
    with a 422; callers that bypass them get InvalidRequestError here.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > PASSWORD_MAX_BYTES:
        raise InvalidRequestError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes when UTF-8 encoded")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("anchor_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: str, email: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT carrying the user identity.

    Args:
        user_id:        Opaque user ID, stored as the JWT subject claim.
        email:          The user's email at issue time.
        expire_seconds: Token lifetime in seconds. If 0 (default), uses
                        Settings.access_token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": user_id,
        "email": email,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new refresh token: 64 random bytes as 128 hex characters."""
    return secrets.token_hex(64)


def refresh_token_expiry(now: datetime | None = None) -> datetime:
    """Return the expiry timestamp for a refresh token issued at `now`."""
    now = now or datetime.now(timezone.utc)
    return now + timedelta(days=_settings.refresh_token_expire_days)


# ---------------------------------------------------------------------------
# API tokens
# ---------------------------------------------------------------------------

API_TOKEN_PREFIX = "anc_"


def generate_api_token() -> str:
    """Generate a new API token in the format: anc_<64 hex chars>.

    secrets.token_hex(32) gives 256 bits of entropy. The prefix makes a
    leaked token easy to recognise in logs and secret scanners.
    """
    return f"{API_TOKEN_PREFIX}{secrets.token_hex(32)}"
