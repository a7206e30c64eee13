from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    used by the HTTP envelope; console replies only carry ``message``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class InvalidCredentials(AuthenticationError):
    default_message = "invalid username or password"


class TokenNotFound(AuthenticationError):
    default_message = "token not found"


class TokenExpired(AuthenticationError):
    default_message = "token expired"


class Unauthenticated(AuthenticationError):
    default_message = "not logged in"


class AccountNotFound(NotFoundError):
    default_message = "account not found"


class BindingNotFound(NotFoundError):
    default_message = "binding not found"


class AlreadyLinked(ConflictError):
    default_message = "this account is already linked"


class LastBindingError(ConflictError):
    default_message = "cannot remove the last self-owned binding"


class Forbidden(ForbiddenError):
    default_message = "permission denied"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InvalidCredentials",
    "TokenNotFound",
    "TokenExpired",
    "Unauthenticated",
    "AccountNotFound",
    "BindingNotFound",
    "AlreadyLinked",
    "LastBindingError",
    "Forbidden",
]
