from __future__ import annotations

import asyncio
import contextlib
import hmac
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse, urlunparse

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from otpgate.logging import get_logger
from otpgate.storage.errors import StorageError

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60
DEFAULT_INIT_TIMEOUT_SECONDS = 5.0
DEFAULT_RECONNECT_INTERVAL_SECONDS = 30.0
SCAN_BATCH_SIZE = 100

# Errors raised by redis-py for an unreachable or misbehaving server
_REMOTE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)
# from_url rejects a malformed REDIS_URL with ValueError
_CONNECT_ERRORS = _REMOTE_ERRORS + (ValueError,)


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a Redis-style ``*`` glob into an anchored regex.

    Only ``*`` is treated as a wildcard; every other character matches
    literally so the memory path selects the same keys as ``SCAN MATCH``.
    """
    parts = [re.escape(part) for part in pattern.split("*")]
    return re.compile("^" + ".*".join(parts) + "$", re.DOTALL)


class BackendState(str, Enum):
    """Which backend serves key-value operations."""

    CONNECTED = "connected"
    DEGRADED = "degraded"


class CompareResult(str, Enum):
    MATCHED = "matched"
    MISMATCH = "mismatch"
    MISSING = "missing"


@dataclass
class CacheEntry:
    value: str
    expires_at: float

    def expired(self, now: float) -> bool:
        return now > self.expires_at


class KeyValueStore:
    """Redis-backed string store with an in-process fallback map.

    The store starts DEGRADED and moves to CONNECTED once the initial ping
    succeeds. Any remote failure moves it back to DEGRADED; from then on
    every call is served from memory until a reconnect succeeds. A degraded
    store retries the remote at most once per ``reconnect_interval``
    seconds; :meth:`reconnect` retries immediately.
    Values written while connected are not copied to memory, so readers
    must tolerate misses after a degradation.
    """

    # Atomic read-compare-delete: 1 matched and deleted, 0 mismatch, -1 missing
    _COMPARE_AND_DELETE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  return -1
end
if current == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    # Plain counter; the expiry is set on creation and never extended
    _INCREMENT_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 or redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return current
"""

    # Capped fixed-window counter; the expiry is only set when the window opens
    _HIT_COUNTER_SCRIPT = """
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local current = tonumber(redis.call('GET', KEYS[1]) or '0')

if current >= limit then
  local ttl = redis.call('TTL', KEYS[1])
  if ttl < 0 then
    ttl = window
  end
  return {0, current, ttl}
end

current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], window)
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  ttl = window
end
return {1, current, ttl}
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        init_timeout: float = DEFAULT_INIT_TIMEOUT_SECONDS,
        socket_timeout: float = 5.0,
        sweep_interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL_SECONDS,
        client: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis_url = redis_url
        self.init_timeout = init_timeout
        self.socket_timeout = socket_timeout
        self.sweep_interval = sweep_interval
        self.reconnect_interval = reconnect_interval
        self._client = client
        self._clock = clock
        self._memory: Dict[str, CacheEntry] = {}
        self._state = BackendState.DEGRADED
        self._init_task: Optional[asyncio.Task] = None
        self._init_waited = False
        self._closed = False
        self._next_reconnect_at = clock() + reconnect_interval
        self._sweep_task: Optional[asyncio.Task] = None
        self._compare_and_delete = None
        self._hit_counter = None
        self._increment = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> BackendState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is BackendState.CONNECTED

    async def start(self) -> None:
        """Begin connecting and start the memory sweep.

        Safe to call more than once.
        """
        self._ensure_init_task()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("kv_memory_sweep_started", interval_seconds=self.sweep_interval)

    async def close(self) -> None:
        """Stop background tasks and release the Redis connection pool."""
        self._closed = True
        for task in (self._sweep_task, self._init_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._sweep_task = None
        self._init_task = None
        if self._client is not None:
            try:
                await self._client.aclose()
            except _REMOTE_ERRORS as exc:
                logger.warning("kv_close_failed", error=str(exc))
        self._transition(BackendState.DEGRADED, reason="closed")
        logger.info("kv_closed")

    async def reconnect(self) -> bool:
        """Retry the remote backend once; returns True when connected again."""
        if not self._remote_configured():
            return False
        self._next_reconnect_at = self._clock() + self.reconnect_interval
        try:
            if self._client is None:
                self._client = self._make_client()
            await self._client.ping()
        except _CONNECT_ERRORS as exc:
            logger.warning(
                "kv_reconnect_failed",
                redis_url=mask_url_password(self.redis_url),
                error=str(exc),
                retry_in_seconds=self.reconnect_interval,
            )
            return False
        self._register_scripts()
        self._closed = False
        self._transition(BackendState.CONNECTED, reason="reconnected")
        return True

    async def _maybe_reconnect(self) -> None:
        """Retry a degraded remote backend once the cooldown has elapsed."""
        if self._state is BackendState.CONNECTED or self._closed:
            return
        if not self._remote_configured():
            return
        if self._init_task is None or not self._init_task.done():
            return
        if self._clock() < self._next_reconnect_at:
            return
        await self.reconnect()

    def _remote_configured(self) -> bool:
        return self._client is not None or bool(self.redis_url)

    def _make_client(self):
        return aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )

    def _register_scripts(self) -> None:
        self._compare_and_delete = self._client.register_script(
            self._COMPARE_AND_DELETE_SCRIPT
        )
        self._hit_counter = self._client.register_script(self._HIT_COUNTER_SCRIPT)
        self._increment = self._client.register_script(self._INCREMENT_SCRIPT)

    def _ensure_init_task(self) -> None:
        if self._init_task is None:
            self._init_task = asyncio.get_running_loop().create_task(self._initialize())

    async def _initialize(self) -> None:
        if not self._remote_configured():
            logger.warning(
                "kv_redis_not_configured",
                message="REDIS_URL not set; using in-memory fallback",
            )
            return
        try:
            if self._client is None:
                self._client = self._make_client()
            await self._client.ping()
        except _CONNECT_ERRORS as exc:
            logger.warning(
                "kv_redis_connect_failed",
                redis_url=mask_url_password(self.redis_url),
                error=str(exc),
                error_type=type(exc).__name__,
                message="Failed to connect to Redis; using in-memory fallback",
            )
            self._next_reconnect_at = self._clock() + self.reconnect_interval
            self._transition(BackendState.DEGRADED, reason="connect_failed")
            return
        self._register_scripts()
        self._transition(BackendState.CONNECTED, reason="connected")

    async def _ensure_initialized(self) -> None:
        """Wait up to ``init_timeout`` seconds for the first connection attempt.

        Afterwards a degraded backend is retried once the cooldown expires.
        """
        if not self._init_waited:
            self._ensure_init_task()
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._init_task), timeout=self.init_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "kv_init_timeout",
                    timeout_seconds=self.init_timeout,
                    message="Redis not ready; serving from memory until it connects",
                )
            finally:
                self._init_waited = True
        await self._maybe_reconnect()

    async def wait_ready(self) -> BackendState:
        """Finish the first connection attempt (bounded) and report the backend."""
        await self._ensure_initialized()
        return self._state

    def _transition(self, new_state: BackendState, *, reason: str, **context: Any) -> None:
        if new_state is self._state:
            return
        previous = self._state
        self._state = new_state
        if new_state is BackendState.DEGRADED:
            logger.warning(
                "kv_backend_degraded", previous=previous.value, reason=reason, **context
            )
        else:
            logger.info(
                "kv_backend_connected", previous=previous.value, reason=reason, **context
            )

    def _remote_failed(self, op: str, exc: BaseException, **context: Any) -> None:
        logger.error(
            "kv_remote_failed",
            op=op,
            error=str(exc),
            error_type=type(exc).__name__,
            **context,
        )
        self._next_reconnect_at = self._clock() + self.reconnect_interval
        self._transition(BackendState.DEGRADED, reason=f"{op}_failed")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        await self._ensure_initialized()
        if self.is_connected():
            try:
                return await self._client.get(key)
            except _REMOTE_ERRORS as exc:
                self._remote_failed("get", exc, key=key)
        return self._memory_get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        await self._ensure_initialized()
        if self.is_connected():
            try:
                await self._client.set(key, value, ex=int(ttl_seconds))
                return
            except _REMOTE_ERRORS as exc:
                self._remote_failed("set", exc, key=key)
        self._memory[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._ensure_initialized()
        if self.is_connected():
            try:
                await self._client.delete(key)
            except _REMOTE_ERRORS as exc:
                self._remote_failed("delete", exc, key=key)
        self._memory.pop(key, None)

    async def get_ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in whole seconds, or None if absent or expired."""
        await self._ensure_initialized()
        if self.is_connected():
            try:
                ttl = await self._client.ttl(key)
                return ttl if ttl > 0 else None
            except _REMOTE_ERRORS as exc:
                self._remote_failed("ttl", exc, key=key)
        entry = self._memory.get(key)
        if entry is None:
            return None
        remaining = int(entry.expires_at - self._clock())
        return remaining if remaining > 0 else None

    async def scan_keys(self, pattern: str) -> List[str]:
        await self._ensure_initialized()
        if self.is_connected():
            try:
                found: Dict[str, None] = {}
                cursor = 0
                while True:
                    cursor, keys = await self._client.scan(
                        cursor=cursor, match=pattern, count=SCAN_BATCH_SIZE
                    )
                    for key in keys:
                        found[key] = None
                    if int(cursor) == 0:
                        break
                return list(found)
            except _REMOTE_ERRORS as exc:
                self._remote_failed("scan", exc, pattern=pattern)
        regex = glob_to_regex(pattern)
        now = self._clock()
        return [
            key
            for key, entry in list(self._memory.items())
            if regex.match(key) and not entry.expired(now)
        ]

    async def compare_and_delete(self, key: str, expected: str) -> CompareResult:
        """Delete ``key`` only if it currently holds ``expected``."""
        await self._ensure_initialized()
        if self.is_connected():
            try:
                outcome = int(await self._compare_and_delete(keys=[key], args=[expected]))
                if outcome == 1:
                    return CompareResult.MATCHED
                if outcome == 0:
                    return CompareResult.MISMATCH
                return CompareResult.MISSING
            except _REMOTE_ERRORS as exc:
                self._remote_failed("compare_and_delete", exc, key=key)
        # No await between the read and the delete keeps this atomic under asyncio
        current = self._memory_get(key)
        if current is None:
            return CompareResult.MISSING
        if not hmac.compare_digest(current.encode(), expected.encode()):
            return CompareResult.MISMATCH
        self._memory.pop(key, None)
        return CompareResult.MATCHED

    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Atomically add one to a counter and return the new count.

        A new counter expires after ``ttl_seconds``; later increments keep
        the original expiry.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        await self._ensure_initialized()
        if self.is_connected():
            try:
                return int(await self._increment(keys=[key], args=[int(ttl_seconds)]))
            except _REMOTE_ERRORS as exc:
                self._remote_failed("increment", exc, key=key)
        # Read and write with no await in between
        now = self._clock()
        entry = self._memory.get(key)
        if entry is None or entry.expired(now) or not entry.value.isdigit():
            count, expires_at = 1, now + ttl_seconds
        else:
            count, expires_at = int(entry.value) + 1, entry.expires_at
        self._memory[key] = CacheEntry(value=str(count), expires_at=expires_at)
        return count

    async def hit_counter(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Atomically count one hit against a capped Redis counter.

        Returns ``(allowed, count, ttl_seconds)``. Only available while
        connected; raises :class:`StorageError` otherwise so callers can
        choose their own fallback.
        """
        await self._ensure_initialized()
        if not self.is_connected():
            raise StorageError("remote counter unavailable", detail={"key": key})
        try:
            allowed, count, ttl = await self._hit_counter(
                keys=[key], args=[int(limit), int(window_seconds)]
            )
        except _REMOTE_ERRORS as exc:
            self._remote_failed("hit_counter", exc, key=key)
            raise StorageError("remote counter failed", detail={"key": key}) from exc
        return bool(int(allowed)), int(count), int(ttl)

    # ------------------------------------------------------------------
    # Memory fallback
    # ------------------------------------------------------------------

    def _memory_get(self, key: str) -> Optional[str]:
        entry = self._memory.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            self._memory.pop(key, None)
            return None
        return entry.value

    def sweep_memory(self) -> int:
        """Remove expired fallback entries; returns how many were dropped."""
        now = self._clock()
        expired = [key for key, entry in self._memory.items() if entry.expired(now)]
        for key in expired:
            self._memory.pop(key, None)
        return len(expired)

    def clear_memory(self) -> None:
        self._memory.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self._maybe_reconnect()
            try:
                removed = self.sweep_memory()
            except Exception as exc:
                logger.error("kv_memory_sweep_failed", error=str(exc))
                continue
            if removed:
                logger.debug("kv_memory_sweep", removed=removed, remaining=len(self._memory))


__all__ = [
    "BackendState",
    "CacheEntry",
    "CompareResult",
    "KeyValueStore",
    "glob_to_regex",
    "mask_url_password",
]
