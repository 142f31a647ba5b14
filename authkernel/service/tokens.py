from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from authkernel.logging import get_logger
from authkernel.service.errors import ConfigurationError, InvalidTokenError
from authkernel.storage.models import (
    AccessTokenClaims,
    RefreshTokenClaims,
    Role,
    User,
    utcnow,
)

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _timestamp_to_datetime(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header.

    The scheme is matched case-insensitively; a missing header, another
    scheme, or an empty token all yield ``None``.
    """
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class TokenService:
    """Issue and verify HS256 access and refresh tokens.

    Access and refresh tokens are signed with different keys, so a token of
    one kind can never pass verification as the other. Verification is
    purely cryptographic and never touches storage.
    """

    def __init__(
        self,
        *,
        access_secret: Optional[str],
        refresh_secret: Optional[str],
        issuer: str,
        audience: str,
        access_token_ttl: timedelta,
        refresh_token_ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.issuer = issuer
        self.audience = audience
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self._clock = clock

    @property
    def access_token_ttl_seconds(self) -> int:
        return int(self.access_token_ttl.total_seconds())

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: str, token_type: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("invalid token")

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("invalid token")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError("invalid token")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("invalid token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("invalid token")

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError("invalid token")
        if payload.get("token_type") != token_type:
            raise InvalidTokenError("invalid token")
        if not payload.get("sub"):
            raise InvalidTokenError("invalid token")

        try:
            exp = _timestamp_to_datetime(payload["exp"])
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise InvalidTokenError("invalid token")
        if exp <= self._clock():
            raise InvalidTokenError("token expired")
        return payload

    def _require_secret(self, secret: Optional[str], name: str) -> str:
        if not secret:
            raise ConfigurationError(f"{name} is not configured")
        return secret

    def refresh_expires_at(self, now: datetime) -> datetime:
        """Expiry a refresh token issued at ``now`` will carry, to the second."""
        return _timestamp_to_datetime(int((now + self.refresh_token_ttl).timestamp()))

    def issue_access_token(self, user: User, *, now: Optional[datetime] = None) -> str:
        secret = self._require_secret(self._access_secret, "JWT_SECRET")
        now = now or self._clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "email": user.email,
            "role": Role(user.role).value,
            "token_type": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_token_ttl).timestamp()),
        }
        return self._encode_jwt(payload, secret)

    def issue_refresh_token(self, user_id: str, *, now: Optional[datetime] = None) -> str:
        secret = self._require_secret(self._refresh_secret, "REFRESH_TOKEN_SECRET")
        now = now or self._clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            # Fresh entropy so two tokens issued in the same second differ
            "tid": secrets.token_urlsafe(16),
            "token_type": REFRESH_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + self.refresh_token_ttl).timestamp()),
        }
        return self._encode_jwt(payload, secret)

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        secret = self._require_secret(self._access_secret, "JWT_SECRET")
        payload = self._decode_jwt(token, secret, ACCESS_TOKEN_TYPE)
        try:
            role = Role(payload.get("role"))
        except ValueError:
            logger.warning("jwt_unknown_role")
            raise InvalidTokenError("invalid token")
        email = payload.get("email")
        if not isinstance(email, str):
            raise InvalidTokenError("invalid token")
        try:
            issued_at = _timestamp_to_datetime(payload.get("iat", payload["exp"]))
        except (TypeError, ValueError, OverflowError, OSError):
            raise InvalidTokenError("invalid token")
        return AccessTokenClaims(
            user_id=str(payload["sub"]),
            email=email,
            role=role,
            issued_at=issued_at,
            expires_at=_timestamp_to_datetime(payload["exp"]),
        )

    def verify_refresh_token_signature(self, token: str) -> RefreshTokenClaims:
        secret = self._require_secret(self._refresh_secret, "REFRESH_TOKEN_SECRET")
        payload = self._decode_jwt(token, secret, REFRESH_TOKEN_TYPE)
        return RefreshTokenClaims(
            user_id=str(payload["sub"]),
            token_id=str(payload.get("tid", "")),
            expires_at=_timestamp_to_datetime(payload["exp"]),
        )
