"""
auth/oidc_config.py -- Resolve the effective OIDC configuration.

Two sources, one rule:
  Environment-locked: OIDC_ENABLED is set (true OR false) AND OIDC_ISSUER_URL
      and OIDC_CLIENT_ID are both set. The environment owns the config and the
      admin UI cannot change it.
  Database-managed: otherwise. Values come from the key/value settings table
      and can be edited through PATCH /api/admin/settings/oidc.

The config is resolved on every call rather than cached, so an admin change
takes effect on the next request without a restart.

A disabled config always reports provider name "OIDC Provider" and
disable_internal_auth=False, whatever is stored: disabling OIDC must never
lock users out of password login.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import SettingsLockedError
from auth.models import DEFAULT_PROVIDER_NAME, OidcConfig
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("anchor.auth.oidc")

_DB_KEYS = [
    "oidc_enabled",
    "oidc_provider_name",
    "oidc_issuer_url",
    "oidc_client_id",
    "oidc_client_secret",
    "oidc_disable_internal_auth",
]

LOCKED_MESSAGE = (
    "OIDC settings are locked by environment variables. "
    "Remove OIDC_ENABLED, OIDC_ISSUER_URL and OIDC_CLIENT_ID to manage from UI."
)


def _is_true(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


class OidcConfigResolver:
    """Read-through resolver over environment settings and the settings table."""

    def __init__(self, settings: Settings, store: UserStore) -> None:
        self._settings = settings
        self._store = store

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def is_locked(self) -> bool:
        s = self._settings
        return s.oidc_enabled is not None and bool(s.oidc_issuer_url) and bool(s.oidc_client_id)

    def get_config(self) -> OidcConfig:
        if self.is_locked():
            return self._config_from_env()
        return self._config_from_db()

    def _config_from_env(self) -> OidcConfig:
        s = self._settings
        if not s.oidc_enabled:
            return OidcConfig(enabled=False, locked=True, source="env")
        return OidcConfig(
            enabled=True,
            provider_name=s.oidc_provider_name or DEFAULT_PROVIDER_NAME,
            issuer_url=s.oidc_issuer_url,
            client_id=s.oidc_client_id,
            client_secret=s.oidc_client_secret or None,
            disable_internal_auth=s.disable_internal_auth,
            locked=True,
            source="env",
        )

    def _config_from_db(self) -> OidcConfig:
        stored = self._read_stored()
        source = "database" if stored else "default"
        if not _is_true(stored.get("oidc_enabled")):
            return OidcConfig(enabled=False, source=source)

        issuer_url = stored.get("oidc_issuer_url") or None
        client_id = stored.get("oidc_client_id") or None
        if not issuer_url or not client_id:
            logger.warning("OIDC is enabled in database but missing issuer URL or client ID")
        return OidcConfig(
            enabled=True,
            provider_name=stored.get("oidc_provider_name") or DEFAULT_PROVIDER_NAME,
            issuer_url=issuer_url,
            client_id=client_id,
            client_secret=stored.get("oidc_client_secret") or None,
            disable_internal_auth=_is_true(stored.get("oidc_disable_internal_auth")),
            source=source,
        )

    def _read_stored(self) -> dict[str, str]:
        try:
            return self._store.get_settings_map(_DB_KEYS)
        except SQLAlchemyError as exc:
            logger.warning("Failed to read OIDC settings from database: %s", exc)
            return {}

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    def is_enabled(self) -> bool:
        """True only when OIDC is enabled AND has an issuer URL and client ID."""
        return self.get_config().is_usable

    def get_public_config(self) -> dict:
        """Config safe to show unauthenticated clients. Never includes the secret."""
        config = self.get_config()
        return {
            "enabled": config.is_usable,
            "providerName": config.provider_name,
            "issuerUrl": config.issuer_url,
            "clientId": config.client_id,
            "disableInternalAuth": config.disable_internal_auth,
        }

    def get_admin_settings(self) -> dict:
        config = self.get_config()
        return {
            "enabled": config.enabled,
            "providerName": config.provider_name,
            "issuerUrl": config.issuer_url,
            "clientId": config.client_id,
            "hasClientSecret": config.has_client_secret,
            "disableInternalAuth": config.disable_internal_auth,
            "isLocked": config.locked,
            "source": config.source,
        }

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update_settings(
        self,
        enabled: bool | None = None,
        provider_name: str | None = None,
        issuer_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        disable_internal_auth: bool | None = None,
        clear_client_secret: bool = False,
    ) -> None:
        """Persist the given fields. None means "leave unchanged".

        clear_client_secret=True stores an empty secret, turning the client
        into a public (PKCE-only) client.
        """
        if self.is_locked():
            raise SettingsLockedError(LOCKED_MESSAGE)

        values: dict[str, str] = {}
        if enabled is not None:
            values["oidc_enabled"] = "true" if enabled else "false"
        if provider_name is not None:
            values["oidc_provider_name"] = provider_name.strip()
        if issuer_url is not None:
            values["oidc_issuer_url"] = issuer_url.strip().rstrip("/")
        if client_id is not None:
            values["oidc_client_id"] = client_id.strip()
        if clear_client_secret:
            values["oidc_client_secret"] = ""
        elif client_secret is not None:
            values["oidc_client_secret"] = client_secret
        if disable_internal_auth is not None:
            values["oidc_disable_internal_auth"] = "true" if disable_internal_auth else "false"

        if values:
            self._store.set_settings(values)
            logger.info("OIDC settings updated (%s)", ", ".join(sorted(values)))

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    @property
    def app_url(self) -> str:
        return self._settings.app_url

    @property
    def callback_url(self) -> str:
        return f"{self.app_url}/api/auth/oidc/callback"
