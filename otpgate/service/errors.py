from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so an outer transport layer can map failures without
    parsing messages:
    - unauthorized (401)
    - token_expired (401)
    - rate_limited (429)
    - validation_error (400)
    - configuration_error (500)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ConfigurationError(ServiceError):
    """Required configuration or secret is missing or unusable (500).

    Raised at the point of use and never retried.
    """
    status_code = 500
    error_code = "configuration_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """A bearer token could not be accepted."""
    error_code = "invalid_token"


class TokenMalformedError(TokenError):
    """Token is not a well-formed JWT or lacks required claims."""
    pass


class TokenSignatureError(TokenError):
    """Token signature or algorithm did not verify."""
    pass


class TokenExpiredError(TokenError):
    """Token ``exp`` is in the past."""
    error_code = "token_expired"


class TokenNotYetValidError(TokenError):
    """Token ``nbf`` is in the future."""
    error_code = "token_not_active"


class TokenTypeError(TokenError):
    """An access token was used where a refresh token is required, or vice versa."""
    error_code = "invalid_token_type"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class OTPStorageError(ServerError):
    """The OTP could not be persisted."""
    pass


class SessionStorageError(ServerError):
    """The session record could not be persisted."""
    pass


class DeliveryError(ServerError):
    """The mailer failed to hand the message to the transport."""
    status_code = 502
    error_code = "delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConfigurationError",
    "AuthenticationError",
    "TokenError",
    "TokenMalformedError",
    "TokenSignatureError",
    "TokenExpiredError",
    "TokenNotYetValidError",
    "TokenTypeError",
    "RateLimitedError",
    "ServerError",
    "OTPStorageError",
    "SessionStorageError",
    "DeliveryError",
]
