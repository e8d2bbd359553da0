"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from ditto.config import AppEnv, CodeMode, Settings, get_settings, reset_settings_cache

SECRET = "Config-Test-Secret_0123456789abcdefghij"


class TestCodeMode:
    @pytest.mark.parametrize("env", ["development", "test"])
    def test_non_production_defaults_to_deterministic(self, env):
        settings = Settings(app_env=env, jwt_secret=SECRET)

        assert settings.resolved_code_mode is CodeMode.DETERMINISTIC
        assert settings.expose_debug_codes is True

    @pytest.mark.parametrize("env", ["staging", "production"])
    def test_production_like_defaults_to_random(self, env):
        settings = Settings(app_env=env, jwt_secret=SECRET)

        assert settings.is_production_like is True
        assert settings.resolved_code_mode is CodeMode.RANDOM
        assert settings.expose_debug_codes is False

    @pytest.mark.parametrize("env", ["staging", "production"])
    def test_production_like_rejects_deterministic(self, env):
        with pytest.raises(ValidationError, match="deterministic"):
            Settings(app_env=env, code_mode="deterministic", jwt_secret=SECRET)

    def test_random_can_be_forced_in_development(self):
        settings = Settings(app_env="development", code_mode=" Random ", jwt_secret=SECRET)

        assert settings.resolved_code_mode is CodeMode.RANDOM

    def test_unknown_environment_rejected(self):
        with pytest.raises(ValidationError):
            Settings(app_env="prod-ish", jwt_secret=SECRET)


class TestSecrets:
    def test_refresh_secret_falls_back(self):
        settings = Settings(jwt_secret=SECRET)

        assert settings.refresh_signing_secret == SECRET

    def test_blank_refresh_secret_is_unset(self):
        settings = Settings(jwt_secret=SECRET, jwt_refresh_secret="  ")

        assert settings.jwt_refresh_secret is None
        assert settings.refresh_signing_secret == SECRET

    def test_generated_secret_is_persisted(self, tmp_path):
        first = Settings(shared_fs_root=str(tmp_path))
        second = Settings(shared_fs_root=str(tmp_path))

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_short_stored_secret_is_replaced(self, tmp_path):
        (tmp_path / ".jwt_secret").write_text("short")

        settings = Settings(shared_fs_root=str(tmp_path))

        assert settings.jwt_secret != "short"
        assert (tmp_path / ".jwt_secret").read_text() == settings.jwt_secret


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "STAGING")
        monkeypatch.setenv("JWT_SECRET", SECRET)
        monkeypatch.setenv("LOCKOUT_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "")
        monkeypatch.setenv("USER_STORE_PERSIST", "false")

        settings = Settings.from_env()

        assert settings.app_env is AppEnv.STAGING
        assert settings.lockout_max_attempts == 3
        assert settings.google_client_id is None
        assert settings.user_store_persist is False

    def test_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("CODE_TTL_MINUTES", "7")
        reset_settings_cache()
        assert get_settings().code_ttl_minutes == 7
        reset_settings_cache()

    def test_rejects_non_positive_ttl(self, monkeypatch):
        monkeypatch.setenv("CODE_TTL_MINUTES", "0")

        with pytest.raises(ValidationError):
            Settings.from_env()
