from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - invalid_code, invalid_token (401)
    - wrong_token_kind, account_suspended (403)
    - not_found (404)
    - rate_limited (429)
    - server_error (500)
    - delivery_failed (502)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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


class InvalidOrExpiredCodeError(ServiceError):
    """Wrong, missing or expired one-time code (401).

    Raised with the same message for every cause so callers cannot tell
    which phones have an outstanding challenge.
    """
    status_code = 401
    error_code = "invalid_code"
    default_message = "Invalid or expired OTP code"


class InvalidOrExpiredTokenError(ServiceError):
    """Token failed verification, is stale, or names an unknown account (401)."""
    status_code = 401
    error_code = "invalid_token"
    default_message = "Invalid or expired token"


class WrongTokenKindError(ServiceError):
    """An access token was presented where a refresh token is required, or vice versa (403)."""
    status_code = 403
    error_code = "wrong_token_kind"
    default_message = "Wrong token kind"


class AccountSuspendedError(ServiceError):
    """Account is suspended or deleted (403)."""
    status_code = 403
    error_code = "account_suspended"
    default_message = "Your account has been suspended"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "Account not found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "Please wait 60 seconds before requesting a new code"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class DeliveryFailedError(ServiceError):
    """The message provider rejected or dropped the OTP text (502)."""
    status_code = 502
    error_code = "delivery_failed"
    default_message = "Failed to send SMS"


class ServiceUnavailableError(ServiceError):
    """Cache or store could not be reached in time (503)."""
    status_code = 503
    error_code = "unavailable"
    default_message = "Service unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOrExpiredCodeError",
    "InvalidOrExpiredTokenError",
    "WrongTokenKindError",
    "AccountSuspendedError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "DeliveryFailedError",
    "ServiceUnavailableError",
]
