from __future__ import annotations

import os
import re
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from otpgate.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the passwordless login core."""

    node_env: str = env_field("development", "NODE_ENV")
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_init_timeout_seconds: float = env_field(
        5.0,
        "REDIS_INIT_TIMEOUT_SECONDS",
        description="Maximum wait for the initial Redis connection before running in memory",
    )
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    memory_sweep_interval_seconds: int = env_field(60, "MEMORY_SWEEP_INTERVAL_SECONDS")
    redis_reconnect_interval_seconds: float = env_field(
        30.0, "REDIS_RECONNECT_INTERVAL_SECONDS"
    )

    # OTP
    otp_ttl_seconds: int = env_field(600, "OTP_EXPIRY_SECONDS")
    otp_prefix: str = env_field("otp:", "OTP_PREFIX")
    otp_attempts_prefix: str = env_field("otp_attempts:", "OTP_ATTEMPTS_PREFIX")
    otp_max_attempts: int = env_field(
        5,
        "OTP_MAX_ATTEMPTS",
        description="Failed verifications before an OTP is discarded; 0 disables the cap",
    )

    # Tokens
    jwt_secret_name: str = env_field("JWT_SECRET", "JWT_SECRET_NAME")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_EXPIRY_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_EXPIRY_SECONDS"
    )

    # Sessions
    session_expiry_seconds: int = env_field(604800, "SESSION_EXPIRY_SECONDS")
    session_prefix: str = env_field("session:", "SESSION_PREFIX")
    cleanup_interval_minutes: int = env_field(60, "CLEANUP_INTERVAL_MINUTES")

    # Rate limits
    rate_limit_prefix: str = env_field("rate_limit:", "RATE_LIMIT_PREFIX")
    rate_limit_max_requests: int = env_field(10, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: int = env_field(3600, "RATE_LIMIT_WINDOW_SECONDS")
    refresh_rate_limit: int = env_field(10, "REFRESH_RATE_LIMIT")
    refresh_rate_window: int = env_field(3600, "REFRESH_RATE_WINDOW")
    send_otp_rate_limit: int = env_field(5, "SEND_OTP_RATE_LIMIT")
    send_otp_rate_window: int = env_field(3600, "SEND_OTP_RATE_WINDOW")
    verify_otp_rate_limit: int = env_field(10, "VERIFY_OTP_RATE_LIMIT")
    verify_otp_rate_window: int = env_field(600, "VERIFY_OTP_RATE_WINDOW")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sign-in", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.node_env == "production"

    @field_validator(
        "otp_ttl_seconds",
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "session_expiry_seconds",
        "cleanup_interval_minutes",
        "memory_sweep_interval_seconds",
        "redis_reconnect_interval_seconds",
        "rate_limit_window_seconds",
        "refresh_rate_window",
        "send_otp_rate_window",
        "verify_otp_rate_window",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number of seconds/minutes")
        return value

    @field_validator("otp_max_attempts")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be zero or positive")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_url_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


def validate_environment(settings: Settings) -> dict[str, Any]:
    """Check settings and environment values that can't be typed statically.

    Returns ``{"valid": bool, "errors": [...]}``; nothing is raised so the
    caller can decide whether a misconfiguration is fatal at startup.
    """
    errors: list[str] = []
    jwt_secret = os.getenv(settings.jwt_secret_name) or dotenv_values(".env").get(
        settings.jwt_secret_name
    )
    if jwt_secret and len(jwt_secret) < MIN_JWT_SECRET_LENGTH:
        errors.append(
            f"{settings.jwt_secret_name} must be at least {MIN_JWT_SECRET_LENGTH} characters long"
        )
    if settings.email_from_address and not _EMAIL_RE.match(settings.email_from_address):
        errors.append("EMAIL_FROM_ADDRESS must be a valid email address")
    if settings.is_production and not settings.redis_url:
        errors.append("REDIS_URL should be set in production; memory fallback is per-process")
    if errors:
        logger.warning("environment_validation_failed", problems=errors)
    return {"valid": not errors, "errors": errors}


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
