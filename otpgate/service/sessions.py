"""Server-side login sessions with sliding expiry.

Each session is a JSON record under ``<prefix><session_id>`` in the
key-value store. Validating or refreshing a session rewrites it with a
fresh ``lastAccessed`` and the full TTL. A background task periodically
sweeps records whose ``lastAccessed`` is older than the session lifetime;
this matters on the memory fallback, where expiry is only enforced lazily.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from otpgate.logging import get_logger
from otpgate.service.errors import SessionStorageError
from otpgate.storage.kv import KeyValueStore

logger = get_logger(__name__)

DEFAULT_SESSION_EXPIRY_SECONDS = 604800
DEFAULT_CLEANUP_INTERVAL_MINUTES = 60
SESSION_ID_RANDOM_BYTES = 32

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


@dataclass
class SessionData:
    user_id: str
    email: str
    created_at: int
    last_accessed: int
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def to_json(self) -> str:
        record: dict[str, Any] = {
            "userId": self.user_id,
            "email": self.email,
            "createdAt": self.created_at,
            "lastAccessed": self.last_accessed,
        }
        if self.user_agent is not None:
            record["userAgent"] = self.user_agent
        if self.ip_address is not None:
            record["ipAddress"] = self.ip_address
        return json.dumps(record, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "SessionData":
        data = json.loads(raw)
        return cls(
            user_id=data["userId"],
            email=data["email"],
            created_at=int(data["createdAt"]),
            last_accessed=int(data["lastAccessed"]),
            user_agent=data.get("userAgent"),
            ip_address=data.get("ipAddress"),
        )


@dataclass
class SessionResult:
    success: bool
    session: Optional[SessionData] = None
    error: Optional[str] = None


@dataclass
class CleanupResult:
    sessions_deleted: int = 0
    errors: List[str] = field(default_factory=list)


class SessionService:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        expiry_seconds: int = DEFAULT_SESSION_EXPIRY_SECONDS,
        prefix: str = "session:",
        cleanup_interval_minutes: int = DEFAULT_CLEANUP_INTERVAL_MINUTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.expiry_seconds = expiry_seconds
        self.prefix = prefix
        self.cleanup_interval_minutes = cleanup_interval_minutes
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}{session_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def generate_session_id(self) -> str:
        """Base36 millisecond timestamp plus 256 bits of CSPRNG output."""
        timestamp = _to_base36(self._now_ms())
        return f"{timestamp}-{secrets.token_urlsafe(SESSION_ID_RANDOM_BYTES)}"

    async def create(
        self,
        user_id: str,
        email: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        session_id = self.generate_session_id()
        now = self._now_ms()
        data = SessionData(
            user_id=user_id,
            email=email,
            created_at=now,
            last_accessed=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        try:
            await self.kv.set(self._key(session_id), data.to_json(), self.expiry_seconds)
        except Exception as exc:
            logger.error(
                "session_create_failed",
                session_id=session_id,
                user_id=user_id,
                error=str(exc),
            )
            raise SessionStorageError("Failed to create session") from exc
        logger.info(
            "session_created",
            session_id=session_id,
            user_id=user_id,
            email=email,
            expiry_seconds=self.expiry_seconds,
            redis_connected=self.kv.is_connected(),
        )
        return session_id

    async def _touch(self, session_id: str) -> SessionResult:
        key = self._key(session_id)
        raw = await self.kv.get(key)
        if not raw:
            logger.warning("session_not_found", session_id=session_id)
            return SessionResult(success=False, error="Session not found or expired")
        session = SessionData.from_json(raw)
        session.last_accessed = self._now_ms()
        await self.kv.set(key, session.to_json(), self.expiry_seconds)
        return SessionResult(success=True, session=session)

    async def validate(self, session_id: str) -> SessionResult:
        try:
            result = await self._touch(session_id)
        except Exception as exc:
            logger.error("session_validate_error", session_id=session_id, error=str(exc))
            return SessionResult(success=False, error="Session validation failed")
        if result.success:
            logger.info(
                "session_validated", session_id=session_id, user_id=result.session.user_id
            )
        return result

    async def refresh(self, session_id: str) -> SessionResult:
        """Extend a live session by a full lifetime."""
        try:
            result = await self._touch(session_id)
        except Exception as exc:
            logger.error("session_refresh_failed", session_id=session_id, error=str(exc))
            return SessionResult(success=False, error="Failed to refresh session")
        if result.success:
            logger.info(
                "session_refreshed", session_id=session_id, user_id=result.session.user_id
            )
        return result

    async def delete(self, session_id: str) -> None:
        try:
            await self.kv.delete(self._key(session_id))
        except Exception as exc:
            logger.error("session_delete_failed", session_id=session_id, error=str(exc))
            return
        logger.info("session_deleted", session_id=session_id)

    async def cleanup_expired(self) -> CleanupResult:
        """Delete sessions idle for longer than the session lifetime.

        Keys whose value has already vanished count as deleted. Failures on
        one key are recorded and the sweep continues.
        """
        result = CleanupResult()
        pattern = f"{self.prefix}*"
        try:
            keys = await self.kv.scan_keys(pattern)
        except Exception as exc:
            message = f"Session cleanup failed: {exc}"
            result.errors.append(message)
            logger.error("session_cleanup_failed", error=message)
            return result
        logger.debug(
            "session_keys_scanned",
            count=len(keys),
            pattern=pattern,
            redis_connected=self.kv.is_connected(),
        )

        max_age_ms = self.expiry_seconds * 1000
        for key in keys:
            try:
                raw = await self.kv.get(key)
                if not raw:
                    await self.kv.delete(key)
                    result.sessions_deleted += 1
                    continue
                session = SessionData.from_json(raw)
                age_ms = self._now_ms() - session.last_accessed
                if age_ms > max_age_ms:
                    await self.kv.delete(key)
                    result.sessions_deleted += 1
                    logger.info(
                        "session_expired_cleaned",
                        session_id=key[len(self.prefix):],
                        user_id=session.user_id,
                        age_ms=age_ms,
                    )
            except Exception as exc:
                message = f"Failed to cleanup session {key}: {exc}"
                result.errors.append(message)
                logger.error("session_cleanup_key_failed", key=key, error=message)

        logger.info(
            "session_cleanup_completed",
            sessions_deleted=result.sessions_deleted,
            errors=len(result.errors),
        )
        return result

    async def start(self) -> None:
        """Start the periodic cleanup task."""
        if self._running:
            logger.warning("session_cleanup_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "session_cleanup_started", interval_minutes=self.cleanup_interval_minutes
        )

    async def stop(self) -> None:
        """Stop the periodic cleanup task."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("session_cleanup_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.cleanup_interval_minutes * 60)
            try:
                await self.cleanup_expired()
            except Exception as exc:
                logger.error(
                    "session_cleanup_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )


__all__ = ["CleanupResult", "SessionData", "SessionResult", "SessionService"]
