from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from otpgate.logging import get_logger
from otpgate.service.errors import RateLimitedError
from otpgate.storage.kv import BackendState, KeyValueStore

logger = get_logger(__name__)

DEFAULT_MAX_REQUESTS = 10
DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_PREFIX = "rate_limit:"
# In-memory windows kept before expired ones are pruned
MAX_MEMORY_WINDOWS = 10000


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int = DEFAULT_MAX_REQUESTS
    window_seconds: int = DEFAULT_WINDOW_SECONDS
    key_prefix: str = DEFAULT_PREFIX


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int
    error: Optional[str] = None


@dataclass
class _Window:
    count: int
    reset_time: int


class RateLimiter:
    """Fixed-window request counter per ``(operation, identifier)``.

    While the key-value store is connected the count lives in Redis and the
    window starts with the first hit; otherwise an in-process map is used.
    Failures are fail-open.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        default_config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.default_config = default_config or RateLimitConfig()
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = asyncio.Lock()

    def _resolve(
        self,
        config: Optional[RateLimitConfig],
        max_requests: Optional[int],
        window_seconds: Optional[int],
    ) -> RateLimitConfig:
        base = config or self.default_config
        return RateLimitConfig(
            max_requests=base.max_requests if max_requests is None else max_requests,
            window_seconds=base.window_seconds if window_seconds is None else window_seconds,
            key_prefix=base.key_prefix,
        )

    @staticmethod
    def key_for(identifier: str, operation: str, prefix: str = DEFAULT_PREFIX) -> str:
        return f"{prefix}{operation}:{identifier}"

    async def check(
        self,
        identifier: str,
        operation: str,
        config: Optional[RateLimitConfig] = None,
        *,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateLimitResult:
        cfg = self._resolve(config, max_requests, window_seconds)
        key = self.key_for(identifier, operation, cfg.key_prefix)
        now = int(self._clock())
        try:
            if cfg.window_seconds <= 0:
                raise ValueError("window_seconds must be positive")
            if await self.kv.wait_ready() is BackendState.CONNECTED:
                return await self._check_remote(key, cfg, now)
            return await self._check_memory(key, cfg, now)
        except Exception as exc:
            logger.error(
                "rate_limit_check_failed",
                identifier=identifier,
                operation=operation,
                error=str(exc),
            )
            return RateLimitResult(
                allowed=True,
                remaining=cfg.max_requests,
                reset_time=now + max(cfg.window_seconds, 0),
            )

    async def _check_remote(
        self, key: str, cfg: RateLimitConfig, now: int
    ) -> RateLimitResult:
        allowed, count, ttl = await self.kv.hit_counter(
            key, cfg.max_requests, cfg.window_seconds
        )
        reset_time = now + (ttl if ttl > 0 else cfg.window_seconds)
        if not allowed:
            return RateLimitResult(
                allowed=False, remaining=0, reset_time=reset_time, error="Rate limit exceeded"
            )
        return RateLimitResult(
            allowed=True,
            remaining=max(0, cfg.max_requests - count),
            reset_time=reset_time,
        )

    async def _check_memory(
        self, key: str, cfg: RateLimitConfig, now: int
    ) -> RateLimitResult:
        async with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_time:
                if cfg.max_requests <= 0:
                    return RateLimitResult(
                        allowed=False,
                        remaining=0,
                        reset_time=now + cfg.window_seconds,
                        error="Rate limit exceeded",
                    )
                window = _Window(count=1, reset_time=now + cfg.window_seconds)
                self._windows[key] = window
                if len(self._windows) > MAX_MEMORY_WINDOWS:
                    self.prune()
                return RateLimitResult(
                    allowed=True,
                    remaining=cfg.max_requests - 1,
                    reset_time=window.reset_time,
                )
            if window.count >= cfg.max_requests:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=window.reset_time,
                    error="Rate limit exceeded",
                )
            window.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=cfg.max_requests - window.count,
                reset_time=window.reset_time,
            )

    async def enforce(
        self,
        identifier: str,
        operation: str,
        config: Optional[RateLimitConfig] = None,
        **overrides,
    ) -> RateLimitResult:
        """Like :meth:`check` but raises :class:`RateLimitedError` when denied."""
        result = await self.check(identifier, operation, config, **overrides)
        if not result.allowed:
            retry_after = max(0, result.reset_time - int(self._clock()))
            logger.warning(
                "rate_limit_exceeded",
                identifier=identifier,
                operation=operation,
                retry_after=retry_after,
            )
            raise RateLimitedError(
                "Rate limit exceeded",
                detail={"operation": operation, "retry_after": retry_after},
            )
        return result

    async def reset(
        self, identifier: str, operation: str, *, key_prefix: Optional[str] = None
    ) -> None:
        key = self.key_for(
            identifier, operation, key_prefix or self.default_config.key_prefix
        )
        try:
            async with self._lock:
                self._windows.pop(key, None)
            await self.kv.delete(key)
        except Exception as exc:
            logger.error(
                "rate_limit_reset_failed",
                identifier=identifier,
                operation=operation,
                error=str(exc),
            )
            return
        logger.info("rate_limit_reset", identifier=identifier, operation=operation)

    def prune(self) -> int:
        """Drop expired in-memory windows; returns how many were removed."""
        now = int(self._clock())
        expired = [key for key, window in self._windows.items() if now > window.reset_time]
        for key in expired:
            self._windows.pop(key, None)
        return len(expired)


__all__ = ["RateLimitConfig", "RateLimitResult", "RateLimiter"]
