from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable machine-readable
    ``error_code``. Callers may override the code with a more precise reason
    (``DEVICE_NOT_FOUND``, ``TEAM_BOUNDARY_VIOLATION``) while keeping the
    category's status.
    """

    status_code: int = 400
    error_code: str = "VALIDATION"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        body: dict = {"code": self.error_code, "message": self.message}
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        return body


class ValidationError(ServiceError):
    """Missing or malformed input (400)."""
    status_code = 400
    error_code = "VALIDATION"


class AuthenticationError(ServiceError):
    """Missing, invalid, expired or revoked credentials (401)."""
    status_code = 401
    error_code = "UNAUTHENTICATED"


class InvalidCredentialsError(AuthenticationError):
    """Generic login failure; never says which part of the credential was wrong."""
    error_code = "INVALID_CREDENTIALS"


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"


class SessionExpiredError(AuthenticationError):
    error_code = "SESSION_EXPIRED"


class ForbiddenError(ServiceError):
    """Authorization denial (403); ``error_code`` holds the precise reason."""
    status_code = 403
    error_code = "INSUFFICIENT_PERMISSIONS"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Too many attempts on one channel within its window (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"


class AccountLockedError(ServiceError):
    """Lockout after repeated PIN failures (423); outlives ordinary rate limits."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class ServerError(ServiceError):
    status_code = 500
    error_code = "INTERNAL_ERROR"


class ServiceUnavailableError(ServiceError):
    """Retryable backend failure such as a store timeout (503)."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
    "ServerError",
    "ServiceUnavailableError",
]
