"""
tests/test_oidc_config.py -- Unit tests for auth/oidc_config.py (OidcConfigResolver).

Covers:
  - environment-locked mode: requires OIDC_ENABLED set plus issuer and client id
  - locked + OIDC_ENABLED=false resolves to disabled
  - database-managed mode: "database" vs "default" source
  - enabled-but-incomplete config is reported as not usable, with a warning
  - public projection never exposes the client secret
  - update_settings(): locked rejection, partial update, clear_client_secret
"""

from __future__ import annotations

import logging
import uuid

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import SettingsLockedError
from auth.models import DEFAULT_PROVIDER_NAME
from auth.oidc_config import OidcConfigResolver
from auth.store import UserStore
from core.config import Settings


@pytest.fixture
def store():
    s = UserStore(db_url=f"sqlite:///file:test_oidc_config_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield s
    s.close()


def _settings(**overrides) -> Settings:
    base = {
        "debug": True,
        "oidc_enabled": None,
        "oidc_issuer_url": "",
        "oidc_client_id": "",
        "oidc_client_secret": "",
        "oidc_provider_name": "",
        "app_url": "https://notes.example.com/",
    }
    base.update(overrides)
    return Settings(**base)


class TestEnvironmentLock:
    """OIDC_ENABLED + OIDC_ISSUER_URL + OIDC_CLIENT_ID lock the config."""

    def test_locked_when_all_three_set(self, store):
        resolver = OidcConfigResolver(
            _settings(
                oidc_enabled=True,
                oidc_issuer_url="https://idp.example.com",
                oidc_client_id="anchor",
                oidc_client_secret="s3cret",
                oidc_provider_name="Corp SSO",
            ),
            store,
        )
        config = resolver.get_config()
        assert resolver.is_locked()
        assert config.locked and config.source == "env"
        assert config.is_usable
        assert config.provider_name == "Corp SSO"
        assert config.client_secret == "s3cret"

    def test_locked_disabled(self, store):
        resolver = OidcConfigResolver(
            _settings(oidc_enabled=False, oidc_issuer_url="https://idp.example.com", oidc_client_id="anchor"),
            store,
        )
        config = resolver.get_config()
        assert resolver.is_locked()
        assert not config.enabled
        assert config.provider_name == DEFAULT_PROVIDER_NAME
        assert config.disable_internal_auth is False

    def test_not_locked_without_enabled_flag(self, store):
        resolver = OidcConfigResolver(
            _settings(oidc_issuer_url="https://idp.example.com", oidc_client_id="anchor"),
            store,
        )
        assert not resolver.is_locked()
        assert resolver.get_config().source == "default"

    def test_locked_settings_reject_updates(self, store):
        resolver = OidcConfigResolver(
            _settings(oidc_enabled=True, oidc_issuer_url="https://idp.example.com", oidc_client_id="anchor"),
            store,
        )
        with pytest.raises(SettingsLockedError):
            resolver.update_settings(enabled=False)
        assert store.get_settings_map() == {}, "A locked update must not write anything"


class TestDatabaseManaged:
    """Config read from the settings table."""

    def test_default_source_when_nothing_stored(self, store):
        config = OidcConfigResolver(_settings(), store).get_config()
        assert config.source == "default"
        assert not config.enabled
        assert not config.is_usable

    def test_database_source_after_update(self, store):
        resolver = OidcConfigResolver(_settings(), store)
        resolver.update_settings(
            enabled=True,
            provider_name=" Keycloak ",
            issuer_url="https://sso.example.com/realms/anchor/",
            client_id="anchor-web",
            client_secret="abc",
        )
        config = resolver.get_config()
        assert config.source == "database"
        assert config.is_usable
        assert config.provider_name == "Keycloak"
        assert config.issuer_url == "https://sso.example.com/realms/anchor", "Trailing slash is stripped"

    def test_enabled_but_incomplete_is_not_usable(self, store, caplog):
        resolver = OidcConfigResolver(_settings(), store)
        resolver.update_settings(enabled=True, issuer_url="https://sso.example.com")
        with caplog.at_level(logging.WARNING, logger="anchor.auth.oidc"):
            assert resolver.is_enabled() is False
        assert "missing issuer URL or client ID" in caplog.text
        assert resolver.get_public_config()["enabled"] is False

    def test_partial_update_leaves_other_fields(self, store):
        resolver = OidcConfigResolver(_settings(), store)
        resolver.update_settings(enabled=True, issuer_url="https://sso.example.com", client_id="a", client_secret="x")
        resolver.update_settings(provider_name="Renamed")
        config = resolver.get_config()
        assert config.client_id == "a"
        assert config.client_secret == "x"
        assert config.provider_name == "Renamed"

    def test_clear_client_secret_makes_public_client(self, store):
        resolver = OidcConfigResolver(_settings(), store)
        resolver.update_settings(enabled=True, issuer_url="https://sso.example.com", client_id="a", client_secret="x")
        resolver.update_settings(clear_client_secret=True, client_secret="ignored")
        admin = resolver.get_admin_settings()
        assert admin["hasClientSecret"] is False
        assert resolver.get_config().is_usable, "A public client is still a usable config"

    def test_disabled_config_hides_disable_internal_auth(self, store):
        resolver = OidcConfigResolver(_settings(), store)
        resolver.update_settings(enabled=False, disable_internal_auth=True, provider_name="Corp")
        public = resolver.get_public_config()
        assert public["disableInternalAuth"] is False
        assert public["providerName"] == DEFAULT_PROVIDER_NAME

    def test_database_error_reads_as_unconfigured(self, store, caplog, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "get_settings_map", broken)
        with caplog.at_level(logging.WARNING, logger="anchor.auth.oidc"):
            config = OidcConfigResolver(_settings(), store).get_config()
        assert not config.enabled
        assert "Failed to read OIDC settings" in caplog.text


class TestProjections:
    """Public and admin dictionaries."""

    def test_public_config_never_contains_secret(self, store):
        resolver = OidcConfigResolver(_settings(), store)
        resolver.update_settings(
            enabled=True, issuer_url="https://sso.example.com", client_id="a", client_secret="top-secret"
        )
        public = resolver.get_public_config()
        admin = resolver.get_admin_settings()
        assert "top-secret" not in repr(public)
        assert "top-secret" not in repr(admin)
        assert "top-secret" not in repr(resolver.get_config())
        assert admin["hasClientSecret"] is True
        assert set(public) == {"enabled", "providerName", "issuerUrl", "clientId", "disableInternalAuth"}

    def test_callback_url_uses_app_url_without_trailing_slash(self, store):
        resolver = OidcConfigResolver(_settings(), store)
        assert resolver.callback_url == "https://notes.example.com/api/auth/oidc/callback"
