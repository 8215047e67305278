from __future__ import annotations

import secrets

from otpgate.logging import get_logger
from otpgate.service.errors import OTPStorageError
from otpgate.storage.kv import CompareResult, KeyValueStore

logger = get_logger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999
DEFAULT_OTP_TTL_SECONDS = 600
DEFAULT_MAX_ATTEMPTS = 5


class OTPService:
    """Issues and single-use-verifies 6-digit email codes."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_OTP_TTL_SECONDS,
        prefix: str = "otp:",
        attempts_prefix: str = "otp_attempts:",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.kv = kv
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self.attempts_prefix = attempts_prefix
        self.max_attempts = max_attempts

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}{identifier}"

    def _attempts_key(self, identifier: str) -> str:
        return f"{self.attempts_prefix}{identifier}"

    def generate(self) -> str:
        """Uniform 6-digit code from the OS CSPRNG."""
        return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))

    async def store(self, identifier: str, code: str) -> None:
        """Persist ``code`` as the only live OTP for ``identifier``.

        Raises:
            OTPStorageError: the underlying write failed.
        """
        try:
            await self.kv.set(self._key(identifier), code, self.ttl_seconds)
            await self.kv.delete(self._attempts_key(identifier))
        except Exception as exc:
            logger.error("otp_store_failed", identifier=identifier, error=str(exc))
            raise OTPStorageError("Failed to store OTP") from exc
        logger.info(
            "otp_stored",
            identifier=identifier,
            expiry_seconds=self.ttl_seconds,
            redis_connected=self.kv.is_connected(),
        )

    async def generate_and_store(self, identifier: str) -> str:
        code = self.generate()
        await self.store(identifier, code)
        return code

    async def verify(self, identifier: str, candidate: str) -> bool:
        """Return True at most once per stored code.

        A match deletes the code before returning. A mismatch leaves it in
        place unless ``max_attempts`` failures have now been recorded, in
        which case the code is discarded. Errors fail closed.
        """
        try:
            outcome = await self.kv.compare_and_delete(self._key(identifier), candidate)
            if outcome is CompareResult.MISSING:
                logger.warning("otp_verify_not_found", identifier=identifier)
                return False
            if outcome is CompareResult.MATCHED:
                await self.kv.delete(self._attempts_key(identifier))
                logger.info("otp_verified", identifier=identifier)
                return True
            await self._record_failure(identifier)
            return False
        except Exception as exc:
            logger.error(
                "otp_verify_error",
                identifier=identifier,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

    async def _record_failure(self, identifier: str) -> None:
        if self.max_attempts <= 0:
            logger.warning("otp_verify_mismatch", identifier=identifier)
            return
        attempts_key = self._attempts_key(identifier)
        ttl = await self.kv.get_ttl(self._key(identifier)) or self.ttl_seconds
        attempts = await self.kv.increment(attempts_key, ttl)
        if attempts >= self.max_attempts:
            await self.delete(identifier)
            logger.warning(
                "otp_attempts_exhausted", identifier=identifier, attempts=attempts
            )
            return
        logger.warning(
            "otp_verify_mismatch",
            identifier=identifier,
            attempts=attempts,
            remaining_attempts=self.max_attempts - attempts,
        )

    async def delete(self, identifier: str) -> None:
        await self.kv.delete(self._key(identifier))
        await self.kv.delete(self._attempts_key(identifier))


__all__ = ["OTPService"]
