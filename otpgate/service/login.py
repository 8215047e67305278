from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from otpgate.logging import get_logger
from otpgate.service.errors import AuthenticationError, ValidationError
from otpgate.service.mailer import Mailer
from otpgate.service.otp import OTPService
from otpgate.service.rate_limit import RateLimitConfig, RateLimiter
from otpgate.service.sessions import SessionService
from otpgate.service.tokens import AuthResult, TokenPair, TokenService

logger = get_logger(__name__)

SEND_OTP = "send_otp"
VERIFY_OTP = "verify_otp"
REFRESH = "refresh"

_USER_NAMESPACE = uuid.UUID("6f1c1a52-58a5-4b1e-9c0d-3f3c2f6e8a10")


def user_id_for(email: str) -> str:
    """Stable user id derived from the normalized email address."""
    return str(uuid.uuid5(_USER_NAMESPACE, normalize_email(email)))


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class LoginResult:
    user_id: str
    email: str
    session_id: str
    tokens: TokenPair


class PasswordlessLogin:
    """Email-OTP login: send a code, exchange it for a session and tokens.

    Delivery runs after the code is stored; a failed send leaves the stored
    code in place until it expires or is replaced.
    """

    def __init__(
        self,
        otp: OTPService,
        tokens: TokenService,
        sessions: SessionService,
        limiter: RateLimiter,
        mailer: Mailer,
        *,
        send_limit: RateLimitConfig,
        verify_limit: RateLimitConfig,
        refresh_limit: RateLimitConfig,
        subject: str = "Your sign-in code",
        resolve_user_id: Callable[[str], str] = user_id_for,
    ) -> None:
        self.otp = otp
        self.tokens = tokens
        self.sessions = sessions
        self.limiter = limiter
        self.mailer = mailer
        self.send_limit = send_limit
        self.verify_limit = verify_limit
        self.refresh_limit = refresh_limit
        self.subject = subject
        self.resolve_user_id = resolve_user_id

    async def send_otp(self, email: str) -> dict:
        """Issue a code for ``email`` and hand it to the mailer.

        Raises:
            ValidationError: the address is empty or has no ``@``.
            RateLimitedError: too many codes requested for this address.
            OTPStorageError, DeliveryError: the code could not be stored or sent.
        """
        address = normalize_email(email)
        if "@" not in address:
            raise ValidationError("A valid email address is required")
        await self.limiter.enforce(address, SEND_OTP, self.send_limit)
        code = await self.otp.generate_and_store(address)
        minutes = max(1, self.otp.ttl_seconds // 60)
        text = f"Your sign-in code is {code}. It expires in {minutes} minutes."
        delivery_id = await asyncio.to_thread(self.mailer.send, address, self.subject, text)
        logger.info("otp_sent", email=address, delivery_id=delivery_id)
        return {"delivery_id": delivery_id, "expires_in": self.otp.ttl_seconds}

    async def verify_otp(
        self,
        email: str,
        otp: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Exchange a valid code for a session and a token pair.

        Raises:
            RateLimitedError: too many verification attempts for this address.
            AuthenticationError: the code is wrong, expired or already used.
        """
        address = normalize_email(email)
        await self.limiter.enforce(address, VERIFY_OTP, self.verify_limit)
        if not otp or not await self.otp.verify(address, otp.strip()):
            raise AuthenticationError("Invalid or expired verification code")

        user_id = self.resolve_user_id(address)
        session_id = await self.sessions.create(
            user_id, address, user_agent=user_agent, ip_address=ip_address
        )
        pair = self.tokens.create_token_pair(user_id, address)
        await self.limiter.reset(address, VERIFY_OTP)
        logger.info("login_completed", user_id=user_id, session_id=session_id)
        return LoginResult(user_id=user_id, email=address, session_id=session_id, tokens=pair)

    def validate(self, authorization: Optional[str]) -> AuthResult:
        """Check an ``Authorization: Bearer`` header carrying an access token."""
        try:
            token = self.tokens.parse_bearer(authorization)
        except AuthenticationError as exc:
            return AuthResult(success=False, error=exc.message)
        return self.tokens.authenticate(token)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Mint a new pair from a refresh token, rate limited per user.

        Raises:
            TokenError: the token is invalid, expired or not a refresh token.
            RateLimitedError: too many refreshes for this user.
        """
        payload = self.tokens.verify_refresh(refresh_token)
        await self.limiter.enforce(payload.user_id, REFRESH, self.refresh_limit)
        return self.tokens.create_token_pair(payload.user_id, payload.email)

    async def logout(self, session_id: str) -> None:
        await self.sessions.delete(session_id)


__all__ = ["LoginResult", "PasswordlessLogin", "normalize_email", "user_id_for"]
