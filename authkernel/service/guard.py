from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from authkernel.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ServiceError,
)
from authkernel.storage.models import AccessTokenClaims, Role


class DenyReason(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class AuthDecision:
    """Outcome of a guard check; ``claims`` is set whenever a principal exists."""

    allowed: bool
    claims: Optional[AccessTokenClaims] = None
    reason: Optional[DenyReason] = None


def authorize(
    claims: Optional[AccessTokenClaims],
    allowed_roles: Optional[Iterable[Role]] = None,
) -> AuthDecision:
    """Decide whether verified ``claims`` may proceed.

    With no ``allowed_roles`` any authenticated principal is admitted.
    Missing or unverifiable credentials deny with ``UNAUTHENTICATED``; a
    verified principal outside the allowed set denies with ``FORBIDDEN``.
    """
    if claims is None:
        return AuthDecision(allowed=False, reason=DenyReason.UNAUTHENTICATED)
    if allowed_roles is not None:
        permitted = {Role(role) for role in allowed_roles}
        if claims.role not in permitted:
            return AuthDecision(
                allowed=False, claims=claims, reason=DenyReason.FORBIDDEN
            )
    return AuthDecision(allowed=True, claims=claims)


def authorize_optional(claims: Optional[AccessTokenClaims]) -> AuthDecision:
    """Never denies; attaches the principal when one was verified."""
    return AuthDecision(allowed=True, claims=claims)


def decision_error(decision: AuthDecision) -> ServiceError:
    if decision.reason == DenyReason.FORBIDDEN:
        return AuthorizationError("insufficient permissions")
    return AuthenticationError("authentication required")
