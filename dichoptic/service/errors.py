from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. Both may be overridden per raise, e.g. an
    invalid refresh token is reported as 401 while an invalid reset token
    is reported as 400.
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


class ConflictError(ServiceError):
    """An account with this email already exists (400)."""
    status_code = 400
    error_code = "conflict"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the message never says which."""
    error_code = "invalid_credentials"


class EmailNotVerifiedError(AuthenticationError):
    """Correct credentials on an account whose email is not yet verified."""
    error_code = "email_not_verified"


class InvalidTokenError(ServiceError):
    """Bad signature, unknown verification/reset token or refresh mismatch."""
    status_code = 400
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    """Refresh token is past its stored expiry (401)."""
    error_code = "token_expired"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AlreadyVerifiedError(ServiceError):
    status_code = 400
    error_code = "already_verified"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class EmailDeliveryFailedError(ServerError):
    """The email dispatcher reported a failure the caller asked to see."""
    error_code = "email_delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "EmailNotVerifiedError",
    "InvalidTokenError",
    "TokenExpiredError",
    "NotFoundError",
    "AlreadyVerifiedError",
    "RateLimitedError",
    "ServerError",
    "EmailDeliveryFailedError",
]
