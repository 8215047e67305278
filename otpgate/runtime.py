from __future__ import annotations

from typing import Optional

from otpgate.config import Settings, get_settings, validate_environment
from otpgate.logging import get_logger
from otpgate.service.login import PasswordlessLogin
from otpgate.service.mailer import Mailer, SMTPMailer
from otpgate.service.otp import OTPService
from otpgate.service.rate_limit import RateLimitConfig, RateLimiter
from otpgate.service.secrets import EnvSecretSource, SecretSource
from otpgate.service.sessions import SessionService
from otpgate.service.tokens import TokenService
from otpgate.storage.kv import KeyValueStore, mask_url_password

logger = get_logger(__name__)


class Runtime:
    """Wires the key-value store, services and login flow from settings.

    Instances are independent; tests and hosts build their own and own the
    lifecycle through :meth:`start` / :meth:`close` or ``async with``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        kv: Optional[KeyValueStore] = None,
        secrets: Optional[SecretSource] = None,
        mailer: Optional[Mailer] = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings

        report = validate_environment(s)
        if not report["valid"] and s.is_production:
            logger.error("runtime_config_invalid", problems=report["errors"])

        self.kv = kv or KeyValueStore(
            s.redis_url,
            init_timeout=s.redis_init_timeout_seconds,
            socket_timeout=s.redis_socket_timeout,
            sweep_interval=s.memory_sweep_interval_seconds,
            reconnect_interval=s.redis_reconnect_interval_seconds,
        )
        self.secrets = secrets or EnvSecretSource()
        self.otp = OTPService(
            self.kv,
            ttl_seconds=s.otp_ttl_seconds,
            prefix=s.otp_prefix,
            attempts_prefix=s.otp_attempts_prefix,
            max_attempts=s.otp_max_attempts,
        )
        self.tokens = TokenService(
            self.secrets,
            secret_name=s.jwt_secret_name,
            access_ttl_seconds=s.access_token_ttl_seconds,
            refresh_ttl_seconds=s.refresh_token_ttl_seconds,
        )
        self.sessions = SessionService(
            self.kv,
            expiry_seconds=s.session_expiry_seconds,
            prefix=s.session_prefix,
            cleanup_interval_minutes=s.cleanup_interval_minutes,
        )
        self.rate_limiter = RateLimiter(
            self.kv,
            default_config=RateLimitConfig(
                max_requests=s.rate_limit_max_requests,
                window_seconds=s.rate_limit_window_seconds,
                key_prefix=s.rate_limit_prefix,
            ),
        )
        self.mailer = mailer or SMTPMailer(
            smtp_host=s.smtp_host,
            smtp_port=s.smtp_port,
            smtp_user=s.smtp_user,
            smtp_password=s.smtp_password,
            smtp_use_tls=s.smtp_use_tls,
            from_email=s.email_from_address,
            from_name=s.email_from_name,
        )
        self.login = PasswordlessLogin(
            self.otp,
            self.tokens,
            self.sessions,
            self.rate_limiter,
            self.mailer,
            send_limit=RateLimitConfig(
                s.send_otp_rate_limit, s.send_otp_rate_window, s.rate_limit_prefix
            ),
            verify_limit=RateLimitConfig(
                s.verify_otp_rate_limit, s.verify_otp_rate_window, s.rate_limit_prefix
            ),
            refresh_limit=RateLimitConfig(
                s.refresh_rate_limit, s.refresh_rate_window, s.rate_limit_prefix
            ),
        )
        self._started = False
        logger.info(
            "runtime_initialized",
            redis_url=mask_url_password(s.redis_url),
            node_env=s.node_env,
            mailer_configured=getattr(self.mailer, "is_configured", True),
        )

    async def start(self) -> None:
        if self._started:
            return
        await self.kv.start()
        backend = await self.kv.wait_ready()
        await self.sessions.start()
        self._started = True
        logger.info("runtime_started", backend=backend.value)

    async def close(self) -> None:
        if not self._started:
            await self.kv.close()
            return
        await self.sessions.stop()
        await self.kv.close()
        self._started = False
        logger.info("runtime_closed")

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["Runtime"]
