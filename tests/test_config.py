"""Tests for Settings loading and secret handling."""

import pytest
from pydantic import ValidationError

from sessionguard.config import MIN_SECRET_LENGTH, Settings, get_settings, reset_settings_cache

ACCESS = "a" * MIN_SECRET_LENGTH
REFRESH = "r" * MIN_SECRET_LENGTH


class TestDefaults:
    def test_defaults_match_token_policy(self, settings):
        assert settings.access_token_ttl_seconds == 15 * 60
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 60 * 60
        assert settings.max_login_attempts == 5
        assert settings.lockout_seconds == 15 * 60
        assert settings.activity_history_limit == 50
        assert settings.max_sessions_per_user == 10
        assert settings.jwt_issuer == "finance-dashboard"
        assert settings.jwt_audience == "finance-dashboard-users"
        assert settings.redis_enabled is False
        assert settings.revocation_probe_interval_seconds < settings.revocation_sweep_interval_seconds


class TestSecrets:
    def test_short_secret_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(secrets_dir=str(tmp_path), access_token_secret="short", refresh_token_secret=REFRESH)

    def test_identical_secrets_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(secrets_dir=str(tmp_path), access_token_secret=ACCESS, refresh_token_secret=ACCESS)

    def test_missing_secrets_are_generated_and_persisted(self, tmp_path):
        first = Settings(secrets_dir=str(tmp_path))
        second = Settings(secrets_dir=str(tmp_path))

        assert len(first.access_token_secret) >= MIN_SECRET_LENGTH
        assert first.access_token_secret != first.refresh_token_secret
        assert first.access_token_secret == second.access_token_secret
        assert (tmp_path / ".jwt_access_secret").read_text() == first.access_token_secret
        assert (tmp_path / ".jwt_refresh_secret").exists()


class TestFromEnv:
    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("JWT_ACCESS_SECRET", ACCESS)
        monkeypatch.setenv("JWT_REFRESH_SECRET", REFRESH)
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
        monkeypatch.setenv("REDIS_ENABLED", "true")

        settings = Settings.from_env()

        assert settings.max_login_attempts == 3
        assert settings.redis_enabled is True
        assert settings.access_token_secret == ACCESS

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("LOCKOUT_MINUTES", raising=False)
        (tmp_path / ".env").write_text(
            f"JWT_ACCESS_SECRET={ACCESS}\nJWT_REFRESH_SECRET={REFRESH}\nLOCKOUT_MINUTES=30\n"
        )
        monkeypatch.delenv("JWT_ACCESS_SECRET", raising=False)
        monkeypatch.delenv("JWT_REFRESH_SECRET", raising=False)

        assert Settings.from_env().lockout_minutes == 30

    def test_get_settings_is_cached_until_reset(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("JWT_ACCESS_SECRET", ACCESS)
        monkeypatch.setenv("JWT_REFRESH_SECRET", REFRESH)

        first = get_settings()
        assert get_settings() is first

        reset_settings_cache()
        assert get_settings() is not first
