"""
auth/service.py -- Local credential flows and the token pair lifecycle.

AuthService owns:
  - registration mode (read/write through the settings table)
  - password registration (policy shared with OIDC via auth/provisioning.py)
  - password login with timing equalization [C1]
  - password change
  - create_token_pair(): the ONLY place access/refresh pairs are minted
  - refresh_tokens(): single-use rotation
  - the per-user API token: read, regenerate, revoke (active users only)

Rotation:
  The presented refresh token is deleted and the replacement is inserted in
  the same transaction. The DELETE must remove exactly one row; if a
  concurrent refresh already consumed the token, the DELETE hits nothing and
  this request is rejected instead of minting a second pair.

Pending accounts:
  A pending user never receives a token pair -- not from register, login,
  refresh, or (in auth/oidc.py) any OIDC path. Pending is reported as
  PendingApprovalError on login and refresh so the UI can tell the user to
  wait, never as "invalid credentials". A refresh token held by an account
  that went back to pending is kept, so it works again after approval.

The service is synchronous (SQLAlchemy Core + bcrypt). FastAPI runs the sync
route handlers that call it in its threadpool.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidRequestError,
    NotFoundError,
    OidcAccountError,
    PendingApprovalError,
)
from auth.models import STATUS_ACTIVE, AuthResult, TokenPair, User
from auth.provisioning import provision_user
from auth.store import UserStore
from auth.tokens import (
    DUMMY_HASH,
    create_access_token,
    generate_api_token,
    generate_refresh_token,
    hash_password,
    refresh_token_expiry,
    verify_password,
)

logger = logging.getLogger("anchor.auth")

PENDING_REGISTRATION_MESSAGE = "Registration successful. Your account is pending approval."
PENDING_LOGIN_MESSAGE = "Account pending approval. Please wait for an administrator to approve your account."
OIDC_ACCOUNT_MESSAGE = "This account uses OIDC authentication. Please use the OIDC login option."
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"

# Attempts at a collision-free API token before giving up.
_API_TOKEN_ATTEMPTS = 5


class AuthService:
    """Password login, registration and session tokens over a UserStore."""

    def __init__(self, store: UserStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Registration mode
    # ------------------------------------------------------------------

    def get_registration_mode(self) -> str:
        return self._store.get_registration_mode()

    def set_registration_mode(self, mode: str) -> str:
        try:
            self._store.set_registration_mode(mode)
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc
        logger.info("Registration mode set to %s", mode)
        return mode

    # ------------------------------------------------------------------
    # Registration / login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str) -> AuthResult:
        """Create a password account. Tokens are issued only when the account is active."""
        hashed = hash_password(password)
        try:
            with self._store.transaction() as conn:
                if self._store.get_by_email(email, conn=conn) is not None:
                    raise ConflictError("User already exists")
                mode = self._store.get_registration_mode(conn)
                user = provision_user(
                    self._store,
                    conn,
                    email=email,
                    name=name.strip(),
                    mode=mode,
                    hashed_password=hashed,
                )
                tokens = None if user.is_pending else self.create_token_pair(user.id, user.email, conn=conn)
        except IntegrityError as exc:
            raise ConflictError("User already exists") from exc

        logger.info("Registered user %s (admin=%s, status=%s)", user.id, user.is_admin, user.status)
        if tokens is None:
            return AuthResult(user=user, message=PENDING_REGISTRATION_MESSAGE)
        return AuthResult(user=user, tokens=tokens)

    def login(self, email: str, password: str) -> AuthResult:
        """Verify a password login.

        Timing equalization [C1]: bcrypt runs whether or not the email exists,
        so response time does not reveal which addresses are registered.
        """
        user = self._store.get_by_email(email)
        if user is None:
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if not user.hashed_password:
            verify_password(password, DUMMY_HASH)
            raise OidcAccountError(OIDC_ACCOUNT_MESSAGE)
        if not verify_password(password, user.hashed_password):
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if user.is_pending:
            raise PendingApprovalError(PENDING_LOGIN_MESSAGE)
        return AuthResult(user=user, tokens=self.create_token_pair(user.id, user.email))

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not user.hashed_password:
            raise InvalidRequestError(
                "Password change is not available for OIDC-authenticated users. "
                "Please change your password through your identity provider."
            )
        if not verify_password(current_password, user.hashed_password):
            raise ForbiddenError("Current password is incorrect")
        if verify_password(new_password, user.hashed_password):
            raise InvalidRequestError("New password must be different from current password")
        self._store.update_user(user_id, hashed_password=hash_password(new_password))
        logger.info("Password changed for user %s", user_id)

    # ------------------------------------------------------------------
    # Token pairs
    # ------------------------------------------------------------------

    def create_token_pair(self, user_id: str, email: str, conn: Connection | None = None) -> TokenPair:
        """Mint an access token and persist a fresh refresh token."""
        refresh = generate_refresh_token()
        self._store.create_refresh_token(refresh, user_id, refresh_token_expiry(), conn=conn)
        return TokenPair(access_token=create_access_token(user_id, email), refresh_token=refresh)

    def refresh_tokens(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token: the presented token is consumed, a new pair is returned."""
        stored = self._store.get_refresh_token(refresh_token)
        if stored is None:
            raise InvalidRefreshTokenError("Invalid refresh token")

        if datetime.fromisoformat(stored.expires_at) < datetime.now(timezone.utc):
            self._store.delete_refresh_token(refresh_token)
            raise InvalidRefreshTokenError("Refresh token has expired")

        user = self._store.get_by_id(stored.user_id)
        if user is None:
            self._store.delete_refresh_token(refresh_token)
            raise InvalidRefreshTokenError("Invalid refresh token")
        if user.is_pending:
            raise PendingApprovalError(PENDING_LOGIN_MESSAGE)

        with self._store.transaction() as conn:
            if not self._store.delete_refresh_token(refresh_token, conn=conn):
                raise InvalidRefreshTokenError("Invalid refresh token")
            return self.create_token_pair(user.id, user.email, conn=conn)

    # ------------------------------------------------------------------
    # API tokens
    # ------------------------------------------------------------------

    def get_api_token(self, user_id: str) -> str | None:
        """Return the user's current API token, or None when none is issued."""
        return self._active_user(user_id).api_token

    def regenerate_api_token(self, user_id: str) -> str:
        """Issue a new API token. The previous token stops working immediately."""
        user = self._active_user(user_id)
        for _ in range(_API_TOKEN_ATTEMPTS):
            candidate = generate_api_token()
            if self._store.get_by_api_token(candidate) is not None:
                continue
            try:
                self._store.update_user(user.id, api_token=candidate)
            except IntegrityError:
                continue
            logger.info("API token regenerated for user %s", user.id)
            return candidate
        raise InvalidRequestError("Failed to generate API token. Please try again.")

    def revoke_api_token(self, user_id: str) -> None:
        user = self._active_user(user_id)
        self._store.update_user(user.id, api_token=None)
        logger.info("API token revoked for user %s", user.id)

    def _active_user(self, user_id: str) -> User:
        user = self._store.get_by_id(user_id)
        if user is None:
            raise ForbiddenError("User not found")
        if user.is_pending:
            raise PendingApprovalError(PENDING_LOGIN_MESSAGE)
        return user

    # ------------------------------------------------------------------
    # Account approval (admin)
    # ------------------------------------------------------------------

    def list_pending_users(self) -> list[User]:
        return self._store.list_pending_users()

    def approve_user(self, user_id: str) -> User:
        """Move a pending account to active. Tokens are issued on the user's next login."""
        with self._store.transaction() as conn:
            user = self._pending_user(user_id, conn)
            self._store.update_user(user.id, conn=conn, status=STATUS_ACTIVE)
            approved = self._store.get_by_id(user.id, conn=conn)
        logger.info("Approved user %s", user_id)
        return approved

    def reject_user(self, user_id: str) -> None:
        """Delete a pending account."""
        with self._store.transaction() as conn:
            user = self._pending_user(user_id, conn)
            self._store.delete_user(user.id, conn=conn)
        logger.info("Rejected pending user %s", user_id)

    def delete_user(self, user_id: str, acting_user_id: str) -> None:
        """Delete an account and its refresh tokens.

        [M4] The last admin cannot be deleted, and an admin cannot delete
        their own account -- either would leave no recovery path without
        direct database access.
        """
        if user_id == acting_user_id:
            raise InvalidRequestError("You cannot delete your own account.")
        with self._store.transaction() as conn:
            user = self._store.get_by_id(user_id, conn=conn)
            if user is None:
                raise NotFoundError("User not found")
            if user.is_admin and self._store.count_admins(conn) <= 1:
                raise InvalidRequestError("Cannot delete the last admin user")
            self._store.delete_user(user_id, conn=conn)
        logger.info("Deleted user %s", user_id)

    def _pending_user(self, user_id: str, conn: Connection) -> User:
        user = self._store.get_by_id(user_id, conn=conn)
        if user is None:
            raise NotFoundError("User not found")
        if not user.is_pending:
            raise InvalidRequestError("User is not pending approval")
        return user
