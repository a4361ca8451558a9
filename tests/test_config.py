"""Settings validation and environment loading."""

import pytest
from pydantic import ValidationError

from playerdash import __main__ as entrypoint
from playerdash.config import (
    MAX_ACCESS_TOKEN_TTL_SECONDS,
    Settings,
    get_settings,
    reset_settings_cache,
)

SECRET = "config-test-secret-0123456789abcdef"


def _settings(**overrides):
    values = {"jwt_secret": SECRET, "use_memory_store": True}
    values.update(overrides)
    return Settings(**values)


class TestSettings:
    def test_jwt_secret_required(self):
        with pytest.raises(ValidationError):
            Settings(use_memory_store=True)

    def test_short_jwt_secret_rejected(self):
        with pytest.raises(ValidationError):
            _settings(jwt_secret="kort")

    def test_access_ttl_capped(self):
        assert _settings(access_token_ttl_seconds=3600).access_token_ttl_seconds == (
            MAX_ACCESS_TOKEN_TTL_SECONDS
        )

    def test_access_ttl_must_be_positive(self):
        with pytest.raises(ValidationError):
            _settings(access_token_ttl_seconds=0)

    def test_handoff_ttl_clamped(self):
        assert _settings(handoff_token_ttl_seconds=3600).handoff_token_ttl_seconds == 300
        assert _settings(handoff_token_ttl_seconds=0).handoff_token_ttl_seconds == 1

    def test_database_url_required_without_memory_store(self):
        with pytest.raises(ValidationError):
            _settings(use_memory_store=False)
        assert _settings(use_memory_store=False, database_url="postgresql://db/app")

    def test_derived_secrets_fall_back_to_jwt_secret(self):
        settings = _settings()
        assert settings.signing_secret == SECRET
        assert settings.totp_key_material == SECRET
        assert _settings(request_signing_secret="apart").signing_secret == "apart"


class TestEnvironment:
    def test_origins_split_from_env(self, monkeypatch):
        monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example, https://b.example,")
        reset_settings_cache()

        assert get_settings().allowed_origins == ["https://a.example", "https://b.example"]

    def test_settings_are_cached_until_reset(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("LOGIN_RATE_LIMIT", "3")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().login_rate_limit == 3

    def test_main_refuses_invalid_settings(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "kort")
        reset_settings_cache()

        assert entrypoint.main() == 2
