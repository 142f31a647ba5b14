from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories.

    The HTTP boundary maps each kind to a status code and a stable error code
    in exactly one table (``authkernel.api.error_handling.ERROR_STATUS``).
    """

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    TOKEN_EXPIRED = "token_expired"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"
    CONFIGURATION = "configuration"


class ServiceError(Exception):
    """Base class for service-layer exceptions surfaced to callers."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed schema or business validation."""
    kind = ErrorKind.VALIDATION


class AuthenticationError(ServiceError):
    """Credentials or token missing, wrong, or unusable."""
    kind = ErrorKind.AUTHENTICATION


class InvalidTokenError(AuthenticationError):
    """Token is malformed, forged, or carries unexpected claims."""
    pass


class TokenExpiredError(AuthenticationError):
    """Refresh token is past its expiry."""
    kind = ErrorKind.TOKEN_EXPIRED


class AuthorizationError(ServiceError):
    """Authenticated, but the role is not permitted."""
    kind = ErrorKind.AUTHORIZATION


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    """Uniqueness violated, e.g. duplicate email."""
    kind = ErrorKind.CONFLICT


class PayloadTooLargeError(ServiceError):
    """Request body exceeds the configured size limit."""
    kind = ErrorKind.PAYLOAD_TOO_LARGE


class RateLimitExceeded(ServiceError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        retry_after: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = retry_after


class InternalError(ServiceError):
    """Unexpected failure; the message returned to clients stays generic."""
    kind = ErrorKind.INTERNAL


class ConfigurationError(ServiceError):
    """Missing or invalid configuration. Fatal at startup."""
    kind = ErrorKind.CONFIGURATION


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "PayloadTooLargeError",
    "RateLimitExceeded",
    "InternalError",
    "ConfigurationError",
]
