from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from otpgate.config import MIN_JWT_SECRET_LENGTH
from otpgate.logging import get_logger
from otpgate.service.errors import (
    AuthenticationError,
    ConfigurationError,
    TokenError,
    TokenExpiredError,
    TokenMalformedError,
    TokenNotYetValidError,
    TokenSignatureError,
    TokenTypeError,
)
from otpgate.service.secrets import SecretSource

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = frozenset({ACCESS, REFRESH})

ACCESS_TOKEN_EXPIRY = 15 * 60
REFRESH_TOKEN_EXPIRY = 7 * 24 * 60 * 60

_ALGORITHM = "HS256"
_SEGMENT_RE = re.compile(r"[A-Za-z0-9_-]*={0,2}")


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    email: str
    type: str
    iat: int
    exp: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass
class AuthResult:
    success: bool
    user_id: Optional[str] = None
    email: Optional[str] = None
    error: Optional[str] = None


class TokenService:
    """Mints and verifies HS256 access/refresh token pairs.

    Tokens are not stored server-side; validity is signature plus ``exp``.
    There is no revocation list, so a leaked token stays valid until it
    expires or the signing secret is rotated.
    """

    def __init__(
        self,
        secrets: SecretSource,
        *,
        secret_name: str = "JWT_SECRET",
        access_ttl_seconds: int = ACCESS_TOKEN_EXPIRY,
        refresh_ttl_seconds: int = REFRESH_TOKEN_EXPIRY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.secrets = secrets
        self.secret_name = secret_name
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    def _signing_key(self) -> bytes:
        secret = self.secrets.get_secret_sync(self.secret_name)
        if not secret:
            raise ConfigurationError(f"{self.secret_name} is required but not found")
        if len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError(
                f"{self.secret_name} must be at least {MIN_JWT_SECRET_LENGTH} characters long"
            )
        return secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, key: bytes) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        key = self._signing_key()
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, key)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        key = self._signing_key()
        if not isinstance(token, str):
            raise TokenMalformedError("Invalid token: jwt must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformedError("Invalid token: jwt malformed") from None
        if not all(_SEGMENT_RE.fullmatch(part) for part in (header_b64, payload_b64, sig_b64)):
            raise TokenMalformedError("Invalid token: jwt malformed")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError):
            raise TokenMalformedError("Invalid token: header is not valid JSON") from None
        # Fixed algorithm; anything else is rejected before checking the signature
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenSignatureError("Invalid token: invalid algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenSignatureError("Invalid token: invalid signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError):
            raise TokenMalformedError("Invalid token: payload is not valid JSON") from None
        if not isinstance(payload, dict):
            raise TokenMalformedError("Invalid token: payload must be an object")

        now = self._clock()
        nbf = payload.get("nbf")
        if isinstance(nbf, (int, float)) and nbf > now:
            raise TokenNotYetValidError("Token not active yet")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            raise TokenMalformedError("Invalid token: missing exp claim")
        if exp <= now:
            raise TokenExpiredError("Token has expired")
        return payload

    def create_token(
        self,
        user_id: str,
        email: str,
        token_type: str = ACCESS,
        expires_in: Optional[int] = None,
    ) -> str:
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type {token_type!r}")
        if expires_in is None:
            expires_in = (
                self.access_ttl_seconds if token_type == ACCESS else self.refresh_ttl_seconds
            )
        iat = int(self._clock())
        return self._encode_jwt(
            {
                "userId": user_id,
                "email": email,
                "type": token_type,
                "iat": iat,
                "exp": iat + int(expires_in),
            }
        )

    def create_token_pair(self, user_id: str, email: str) -> TokenPair:
        """Mint an access and a refresh token for the same identity.

        Raises:
            ConfigurationError: the signing secret is missing or too short.
        """
        return TokenPair(
            access_token=self.create_token(user_id, email, ACCESS, self.access_ttl_seconds),
            refresh_token=self.create_token(user_id, email, REFRESH, self.refresh_ttl_seconds),
            expires_in=self.access_ttl_seconds,
        )

    def verify(self, token: str) -> TokenPayload:
        """Check signature, ``nbf``/``exp`` and required claims.

        Raises:
            TokenSignatureError, TokenExpiredError, TokenNotYetValidError,
            TokenMalformedError: the token is not acceptable.
            ConfigurationError: the signing secret is unusable.
        """
        payload = self._decode_jwt(token)
        user_id = payload.get("userId")
        email = payload.get("email")
        token_type = payload.get("type")
        if not user_id or not email or not token_type:
            raise TokenMalformedError("Invalid token structure")
        if token_type not in TOKEN_TYPES:
            raise TokenMalformedError("Invalid token structure")
        return TokenPayload(
            user_id=str(user_id),
            email=str(email),
            type=token_type,
            iat=int(payload.get("iat") or 0),
            exp=int(payload["exp"]),
        )

    def verify_access(self, token: str) -> TokenPayload:
        payload = self.verify(token)
        if payload.type != ACCESS:
            raise TokenTypeError("Invalid token type. Access token required.")
        return payload

    def verify_refresh(self, token: str) -> TokenPayload:
        payload = self.verify(token)
        if payload.type != REFRESH:
            raise TokenTypeError("Invalid token type. Refresh token required.")
        return payload

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a fresh pair.

        The presented refresh token is not invalidated; it stays usable until
        its own ``exp``.
        """
        payload = self.verify_refresh(refresh_token)
        logger.info("token_pair_refreshed", user_id=payload.user_id)
        return self.create_token_pair(payload.user_id, payload.email)

    @staticmethod
    def parse_bearer(header: Optional[str]) -> str:
        if not header:
            raise AuthenticationError("Authorization header is required")
        parts = header.split(" ")
        if len(parts) != 2 or parts[0] != "Bearer":
            raise AuthenticationError(
                'Authorization header must be in format "Bearer <token>"'
            )
        if not parts[1]:
            raise AuthenticationError("Token is required in Authorization header")
        return parts[1]

    def extract_from_header(self, header: Optional[str]) -> TokenPayload:
        return self.verify(self.parse_bearer(header))

    def authenticate(self, token: str) -> AuthResult:
        """Non-raising access-token check for request guards."""
        try:
            payload = self.verify_access(token)
        except TokenError as exc:
            return AuthResult(success=False, error=exc.message)
        return AuthResult(success=True, user_id=payload.user_id, email=payload.email)

    def is_access_token(self, token: str) -> bool:
        try:
            return self.verify(token).type == ACCESS
        except TokenError:
            return False

    def is_refresh_token(self, token: str) -> bool:
        try:
            return self.verify(token).type == REFRESH
        except TokenError:
            return False

    @staticmethod
    def is_valid_token_format(token: Any) -> bool:
        """Shape check only; does not verify the signature."""
        if not token or not isinstance(token, str):
            return False
        parts = token.split(".")
        if len(parts) != 3:
            return False
        return all(_SEGMENT_RE.fullmatch(part) for part in parts)

    def get_token_expiration(self, token: str) -> int:
        """Seconds until ``exp``; 0 for expired or invalid tokens."""
        try:
            payload = self.verify(token)
        except TokenError:
            return 0
        return max(0, payload.exp - int(self._clock()))

    def is_token_expired(self, token: str) -> bool:
        try:
            self.verify(token)
        except TokenError:
            return True
        return False


__all__ = [
    "ACCESS",
    "REFRESH",
    "AuthResult",
    "TokenPair",
    "TokenPayload",
    "TokenService",
]
