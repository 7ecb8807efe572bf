from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error / invalid_role / invalid_strikes (400)
    - conflict (409)
    - hashing_unavailable (503)
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


class InvalidInputError(ServiceError):
    """Input rejected before any store access (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidRoleError(InvalidInputError):
    """Role value outside the closed role set."""
    error_code = "invalid_role"


class MalformedTokenError(InvalidInputError):
    """Bearer token does not have the shape the issuer mints."""
    pass


class AuthenticationError(ServiceError):
    """No session, an unknown token, or an expired session (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated, but the authoritative role is insufficient (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate sign-up email (409)."""
    status_code = 409
    error_code = "conflict"


class HashingUnavailableError(ServiceError):
    """Password hashing could not run, e.g. memory exhaustion (503)."""
    status_code = 503
    error_code = "hashing_unavailable"


__all__ = [
    "ServiceError",
    "InvalidInputError",
    "InvalidRoleError",
    "MalformedTokenError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "HashingUnavailableError",
]
