from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Raised by routes and services; rendered as the JSON error body.

    ``status_code`` picks the HTTP status and ``error_code`` becomes the
    ``error`` field clients branch on. Pipeline stages do not raise these;
    they return a ``Denial`` instead.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class ValidationError(ServiceError):
    """Malformed or unacceptable input."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """No principal on the session, or credentials/codes that do not match."""
    status_code = 401
    error_code = "UNAUTHENTICATED"


class ForbiddenError(ServiceError):
    """The principal is known but may not perform the action."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """The action clashes with existing state (open appeal, active overlay)."""
    status_code = 409
    error_code = "CONFLICT"


class SessionInvalidatedError(ServiceError):
    """Session state is no longer trusted; the caller must log in again."""
    status_code = 419
    error_code = "SESSION_INVALIDATED"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "RATE_LIMITED"


class ServerError(ServiceError):
    status_code = 500
    error_code = "SERVER_ERROR"


class ServiceUnavailableError(ServiceError):
    """A backing store needed for a security decision is unreachable."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "SessionInvalidatedError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
]
