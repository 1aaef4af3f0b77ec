"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules under api/routes/ (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

credential_rate_limit() is passed to @limiter.limit() as a callable, so the
limit string is read from Settings (LOGIN_RATE_LIMIT) when the limit is
evaluated rather than frozen at import time. Tests raise it to keep
integration suites from tripping over their own request volume.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def credential_rate_limit() -> str:
    """Limit applied to login, register, refresh and OIDC exchange endpoints."""
    return get_settings().login_rate_limit
