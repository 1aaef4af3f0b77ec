"""
auth/provisioning.py -- The one rule for creating accounts.

Password registration (auth/service.py) and OIDC auto-provisioning
(auth/oidc_user.py) both create users through provision_user(), inside a
transaction opened with UserStore.transaction(). Keeping the rule in one place
stops the two paths from drifting apart.

Rule, evaluated inside the caller's transaction:
  1. Registration mode "disabled" rejects every new account.
  2. is_admin = no admin exists yet (first-user bootstrap). Counted in the
     same transaction as the insert, so two concurrent first sign-ups cannot
     both become admin.
  3. status = "active" for admins and in "enabled" mode; "pending" for
     non-admins in "review" mode. Admins are always active so review mode can
     never lock the operator out of a fresh install.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy.engine import Connection

from auth.errors import RegistrationDisabledError
from auth.models import REGISTRATION_DISABLED, REGISTRATION_REVIEW, STATUS_ACTIVE, STATUS_PENDING, User
from auth.store import UserStore


def decide_new_user(mode: str, admin_count: int) -> tuple[bool, str]:
    """Return (is_admin, status) for a new account, or raise if sign-up is closed."""
    if mode == REGISTRATION_DISABLED:
        raise RegistrationDisabledError("Registration is disabled")
    is_admin = admin_count == 0
    if is_admin or mode != REGISTRATION_REVIEW:
        return is_admin, STATUS_ACTIVE
    return is_admin, STATUS_PENDING


def provision_user(
    store: UserStore,
    conn: Connection,
    *,
    email: str,
    name: str,
    mode: str,
    hashed_password: str | None = None,
    oidc_subject: str | None = None,
    profile_image: str | None = None,
) -> User:
    """Create a user according to the registration policy, inside `conn`'s transaction."""
    is_admin, status = decide_new_user(mode, store.count_admins(conn))
    return store.create_user(
        User(
            email=email,
            name=name,
            hashed_password=hashed_password,
            oidc_subject=oidc_subject,
            profile_image=profile_image,
            is_admin=is_admin,
            status=status,
        ),
        conn=conn,
    )
