"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from sessionauth.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("ACCESS_TOKEN_TTL_SECONDS", "REFRESH_TOKEN_TTL_SECONDS", "COOKIE_SECURE"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 604800
        assert settings.max_refresh_tokens_per_user == 5
        assert settings.login_max_attempts == 5
        assert settings.login_window_seconds == 900
        assert settings.login_lockout_seconds == 1800
        assert settings.cookie_secure is True

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "60")
        monkeypatch.setenv("COOKIE_SECURE", "false")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
        monkeypatch.setenv("COOKIE_DOMAIN", "  ")

        settings = Settings.from_env()

        assert settings.access_token_ttl_seconds == 60
        assert settings.cookie_secure is False
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.cookie_domain is None

    @pytest.mark.parametrize(
        "env_name", ["ACCESS_TOKEN_TTL_SECONDS", "MAX_REFRESH_TOKENS_PER_USER", "LOGIN_MAX_ATTEMPTS"]
    )
    def test_non_positive_values_rejected(self, monkeypatch, env_name):
        monkeypatch.setenv(env_name, "0")

        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_generated_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.delenv("JWT_SECRET", raising=False)
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings.from_env().jwt_secret
        second = Settings.from_env().jwt_secret

        assert first == second
        assert len(first) >= 32
        assert (tmp_path / ".jwt_secret").read_text() == first

    def test_settings_cache_reset(self, monkeypatch):
        reset_settings_cache()
        cached = get_settings()
        assert get_settings() is cached

        monkeypatch.setenv("JWT_ISSUER", "other-issuer")
        reset_settings_cache()

        assert get_settings().jwt_issuer == "other-issuer"
        reset_settings_cache()
