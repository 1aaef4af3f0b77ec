"""
auth/oidc_user.py -- Map a verified external identity onto a local account.

find_or_create_user() runs in ONE store transaction (BEGIN IMMEDIATE on
SQLite) and applies, first match wins:

  1. oidc_subject match   -> refresh name / profile image, return.
  2. email match          -> if bound to a DIFFERENT subject: ConflictError.
                             Otherwise bind this subject (logged), refresh
                             name / profile image, return.
  3. new identity         -> provision_user() with the registration policy
                             shared with password sign-up.

If a concurrent request wins the insert race, a unique constraint fails our
INSERT and the winner's row decides the outcome:

  same subject             -> returned as-is.
  same email, other sub    -> ConflictError.
  same email, no subject   -> one retry, which links the subject.

Profile images:
  The picture claim is downloaded with requests (module-level session, at
  most 3 redirects, image/* only, size-capped, bounded by the remaining
  transaction time) to {uploads_dir}/{user_id}-oidc-{ms}{ext} and stored as
  /uploads/profiles/{file}. When the download fails, an https picture URL is
  stored as-is; a non-https URL is never stored.

  File cleanup follows the transaction outcome: the replaced OIDC avatar is
  deleted only after COMMIT, and the freshly downloaded file is deleted if the
  transaction rolls back. Only paths of the form /uploads/profiles/*-oidc-*
  are ever deleted here; user-uploaded images are left alone.

This module is synchronous. The OIDC service calls it through
starlette.concurrency.run_in_threadpool.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

import requests
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError
from auth.models import OidcClaims, User
from auth.provisioning import provision_user
from auth.store import UserStore

logger = logging.getLogger("anchor.auth.oidc")

UPLOADS_PROFILES_PATH = "/uploads/profiles/"
MAX_AVATAR_BYTES = 5 * 1024 * 1024
_CHUNK_SIZE = 64 * 1024

CONTENT_TYPE_EXT_MAP = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}

EMAIL_CONFLICT_MESSAGE = "This email is already linked to a different sign-in account."

# Module-level session shared across avatar downloads for connection pooling.
# max_redirects=3 replaces the requests default of 30: the picture URL comes
# from a third party, so redirect chains are kept short.
_session = requests.Session()
_session.max_redirects = 3


@dataclass
class _AvatarChanges:
    """Files touched by one reconciliation, resolved after commit or rollback."""

    downloaded: Path | None = None
    replaced: str | None = None


def is_oidc_avatar_path(path: str | None) -> bool:
    return bool(path) and path.startswith(UPLOADS_PROFILES_PATH) and "-oidc-" in path


class IdentityReconciler:
    """Find, link or create the local user for a set of OIDC claims.

    Args:
        store:               Credential store.
        uploads_dir:         Directory that backs /uploads/profiles/.
        transaction_timeout: Upper bound in seconds for the whole
                             reconciliation, avatar download included.
        http_session:        requests.Session used for avatar downloads.
    """

    def __init__(
        self,
        store: UserStore,
        uploads_dir: str,
        transaction_timeout: float = 10.0,
        http_session: requests.Session | None = None,
    ) -> None:
        self._store = store
        self._uploads_dir = Path(uploads_dir)
        self._timeout = transaction_timeout
        self._http = http_session or _session

    def find_or_create_user(self, claims: OidcClaims) -> User:
        return self._find_or_create(claims, retry=True)

    def _find_or_create(self, claims: OidcClaims, retry: bool) -> User:
        deadline = time.monotonic() + self._timeout
        changes = _AvatarChanges()
        try:
            with self._store.transaction() as conn:
                user = self._reconcile(conn, claims, deadline, changes)
                if time.monotonic() > deadline:
                    raise TimeoutError("OIDC user transaction timed out")
        except IntegrityError:
            self._discard_download(changes)
            existing = self._store.get_by_oidc_subject(claims.subject)
            if existing is not None:
                logger.info("OIDC subject already provisioned by a concurrent sign-in (user %s)", existing.id)
                return existing
            by_email = self._store.get_by_email(claims.email)
            if by_email is None:
                raise
            if by_email.oidc_subject and by_email.oidc_subject != claims.subject:
                raise ConflictError(EMAIL_CONFLICT_MESSAGE) from None
            if not retry:
                raise
            # A password account took the email concurrently; link to it.
            return self._find_or_create(claims, retry=False)
        except Exception:
            self._discard_download(changes)
            raise

        self._delete_replaced_avatar(changes)
        return user

    # ------------------------------------------------------------------
    # Reconciliation steps
    # ------------------------------------------------------------------

    def _reconcile(self, conn: Connection, claims: OidcClaims, deadline: float, changes: _AvatarChanges) -> User:
        mode = self._store.get_registration_mode(conn)

        user = self._store.get_by_oidc_subject(claims.subject, conn=conn)
        if user is not None:
            return self._refresh_profile(conn, user, claims, deadline, changes)

        user = self._store.get_by_email(claims.email, conn=conn)
        if user is not None:
            if user.oidc_subject and user.oidc_subject != claims.subject:
                raise ConflictError(EMAIL_CONFLICT_MESSAGE)
            extra = {}
            if not user.oidc_subject:
                extra["oidc_subject"] = claims.subject
                logger.info("Linked OIDC subject to existing user %s", user.id)
            return self._refresh_profile(conn, user, claims, deadline, changes, **extra)

        user = provision_user(
            self._store,
            conn,
            email=claims.email,
            name=claims.name,
            mode=mode,
            oidc_subject=claims.subject,
        )
        image = self._resolve_profile_image(claims.picture, user.id, deadline, changes)
        if image:
            self._store.update_user(user.id, conn=conn, profile_image=image)
        logger.info("Created new OIDC user %s (admin=%s, status=%s)", user.id, user.is_admin, user.status)
        return self._store.get_by_id(user.id, conn=conn)

    def _refresh_profile(
        self,
        conn: Connection,
        user: User,
        claims: OidcClaims,
        deadline: float,
        changes: _AvatarChanges,
        **extra,
    ) -> User:
        fields = {"name": claims.name, **extra}
        image = self._resolve_profile_image(claims.picture, user.id, deadline, changes)
        if image is not None and image != user.profile_image:
            fields["profile_image"] = image
            changes.replaced = user.profile_image
        self._store.update_user(user.id, conn=conn, **fields)
        return self._store.get_by_id(user.id, conn=conn)

    # ------------------------------------------------------------------
    # Profile image
    # ------------------------------------------------------------------

    def _resolve_profile_image(
        self, picture: str | None, user_id: str, deadline: float, changes: _AvatarChanges
    ) -> str | None:
        """Return the profile_image value to store, or None to leave it unchanged."""
        if not picture:
            return None
        saved = self._download_picture(picture, user_id, deadline)
        if saved is not None:
            changes.downloaded = saved
            return f"{UPLOADS_PROFILES_PATH}{saved.name}"
        return picture if urlsplit(picture).scheme == "https" else None

    def _download_picture(self, url: str, user_id: str, deadline: float) -> Path | None:
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            return None
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None

        try:
            with self._http.get(url, timeout=remaining, stream=True) as resp:
                resp.raise_for_status()
                content_type = resp.headers.get("Content-Type", "").split(";")[0].strip().lower()
                if not content_type.startswith("image/"):
                    logger.warning("OIDC picture for user %s is not an image (%s)", user_id, content_type or "none")
                    return None
                body = bytearray()
                for chunk in resp.iter_content(_CHUNK_SIZE):
                    body.extend(chunk)
                    if len(body) > MAX_AVATAR_BYTES:
                        logger.warning("OIDC picture for user %s exceeds %d bytes", user_id, MAX_AVATAR_BYTES)
                        return None
        except requests.RequestException as exc:
            logger.warning("Failed to download OIDC picture for user %s: %s", user_id, exc)
            return None

        ext = CONTENT_TYPE_EXT_MAP.get(content_type, ".jpg")
        target = self._uploads_dir / f"{user_id}-oidc-{int(time.time() * 1000)}{ext}"
        try:
            self._uploads_dir.mkdir(parents=True, exist_ok=True)
            target.write_bytes(bytes(body))
        except OSError as exc:
            logger.warning("Failed to store OIDC picture for user %s: %s", user_id, exc)
            return None

        logger.info("Downloaded OIDC avatar for user %s", user_id)
        return target

    def _discard_download(self, changes: _AvatarChanges) -> None:
        if changes.downloaded is None:
            return
        try:
            changes.downloaded.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove orphaned profile image %s: %s", changes.downloaded, exc)

    def _delete_replaced_avatar(self, changes: _AvatarChanges) -> None:
        if not is_oidc_avatar_path(changes.replaced):
            return
        old = self._uploads_dir / Path(changes.replaced).name
        try:
            old.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to delete old profile image %s: %s", old, exc)
