"""Tests for settings loading and environment validation."""

from unittest.mock import patch

import pytest
from pydantic import ValidationError

from otpgate.config import Settings, get_settings, reset_settings_cache, validate_environment


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("REDIS_URL", "NODE_ENV", "OTP_EXPIRY_SECONDS", "SESSION_PREFIX"):
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    yield
    reset_settings_cache()


class TestDefaults:
    def test_defaults(self):
        settings = Settings()
        assert settings.otp_ttl_seconds == 600
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 604800
        assert settings.session_expiry_seconds == 604800
        assert settings.cleanup_interval_minutes == 60
        assert settings.refresh_rate_limit == 10
        assert settings.refresh_rate_window == 3600
        assert settings.rate_limit_max_requests == 10
        assert settings.rate_limit_window_seconds == 3600
        assert settings.redis_reconnect_interval_seconds == 30.0
        assert settings.otp_max_attempts == 5
        assert settings.redis_url is None
        assert not settings.is_production


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("OTP_EXPIRY_SECONDS", "120")
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/2")
        monkeypatch.setenv("NODE_ENV", "production")

        settings = Settings.from_env()

        assert settings.otp_ttl_seconds == 120
        assert settings.redis_url == "redis://localhost:6379/2"
        assert settings.is_production

    def test_reads_default_rate_limit(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "25")
        monkeypatch.setenv("RATE_LIMIT_WINDOW_SECONDS", "60")
        monkeypatch.setenv("REDIS_RECONNECT_INTERVAL_SECONDS", "5")

        settings = Settings.from_env()

        assert settings.rate_limit_max_requests == 25
        assert settings.rate_limit_window_seconds == 60
        assert settings.redis_reconnect_interval_seconds == 5.0

    def test_env_overrides_dotenv(self, monkeypatch, tmp_path):
        (tmp_path / ".env").write_text("SESSION_PREFIX=file:\nOTP_EXPIRY_SECONDS=300\n")
        monkeypatch.setenv("OTP_EXPIRY_SECONDS", "90")

        settings = Settings.from_env()

        assert settings.session_prefix == "file:"
        assert settings.otp_ttl_seconds == 90

    def test_blank_redis_url_is_none(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "   ")
        assert Settings.from_env().redis_url is None

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("OTP_EXPIRY_SECONDS", "42")
        assert get_settings() is first

        reset_settings_cache()
        assert get_settings().otp_ttl_seconds == 42


class TestValidation:
    @pytest.mark.parametrize(
        "field",
        [
            "otp_ttl_seconds",
            "session_expiry_seconds",
            "cleanup_interval_minutes",
            "refresh_rate_window",
            "rate_limit_window_seconds",
            "redis_reconnect_interval_seconds",
        ],
    )
    def test_non_positive_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_negative_attempt_cap_rejected(self):
        with pytest.raises(ValidationError):
            Settings(otp_max_attempts=-1)
        assert Settings(otp_max_attempts=0).otp_max_attempts == 0

    def test_unknown_fields_ignored(self):
        assert Settings(unrelated="x").otp_ttl_seconds == 600


class TestValidateEnvironment:
    def test_valid(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "x" * 40)
        report = validate_environment(Settings(email_from_address="noreply@example.com"))
        assert report == {"valid": True, "errors": []}

    def test_short_secret(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "short")
        report = validate_environment(Settings())
        assert not report["valid"]
        assert "JWT_SECRET must be at least 32 characters long" in report["errors"]

    def test_bad_from_address(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "x" * 40)
        report = validate_environment(Settings(email_from_address="not-an-address"))
        assert report["errors"] == ["EMAIL_FROM_ADDRESS must be a valid email address"]

    def test_production_without_redis(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "x" * 40)
        report = validate_environment(Settings(node_env="production"))
        assert not report["valid"]
        assert any("REDIS_URL" in error for error in report["errors"])

    def test_logs_problems(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "short")
        with patch("otpgate.config.logger") as mock_logger:
            validate_environment(Settings())

            mock_logger.warning.assert_called_once()
            assert mock_logger.warning.call_args[0][0] == "environment_validation_failed"
