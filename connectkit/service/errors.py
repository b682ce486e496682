from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - locked (423)
    - validation_error (400)
    - conflict (409)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password combination rejected; never says which part failed."""

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Token failed signature/expiry checks, was revoked, or is unknown."""

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotVerifiedError(ForbiddenError):
    """Login blocked until the account's email address is verified."""

    def __init__(
        self,
        message: str = "Email address is not verified",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed logins; retry after ``locked_until``."""

    status_code = 423
    error_code = "locked"

    def __init__(
        self,
        locked_until: Optional[datetime] = None,
        retry_after: int = 0,
        message: str = "Account is temporarily locked due to too many failed login attempts",
    ) -> None:
        detail = {
            "lockedUntil": locked_until.isoformat() if locked_until else None,
            "retryAfter": retry_after,
        }
        super().__init__(message, detail=detail)
        self.locked_until = locked_until
        self.retry_after = retry_after


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "AccountLockedError",
    "NotFoundError",
]
