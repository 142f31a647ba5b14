from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterator, List, Mapping, Optional, Protocol

from authkernel.logging import get_logger, log_audit
from authkernel.service.errors import (
    AuthenticationError,
    ConflictError,
    InternalError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    TokenExpiredError,
    ValidationError,
)
from authkernel.service.passwords import SecretHasher
from authkernel.service.tokens import TokenService
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    AuthResult,
    RefreshToken,
    Role,
    SafeUser,
    User,
    utcnow,
)

logger = get_logger(__name__)

PROFILE_FIELDS = frozenset({"email", "password", "first_name", "last_name"})


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        role: Role = Role.USER,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self) -> List[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def deactivate_user(self, user_id: str) -> Optional[User]: ...

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> int: ...

    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...

    def verify_connection(self) -> None: ...


class SessionService:
    """Register, log in, rotate, and revoke sessions.

    A session is a pair of tokens: a short-lived access token verified
    statelessly and a long-lived refresh token that is only honoured while
    its server-side row exists. Every successful refresh consumes the
    presented row and writes a new one in a single store transaction.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        hasher: SecretHasher,
        *,
        clock=utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.hasher = hasher
        self._clock = clock
        self.logger = logger

    @contextlib.contextmanager
    def _storage_errors(self, operation: str) -> Iterator[None]:
        """Surface unexpected storage failures as ``InternalError``."""
        try:
            yield
        except (ServiceError, ConstraintViolation):
            raise
        except Exception as exc:
            self.logger.error(
                "credential_store_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("internal server error") from exc

    def _new_refresh_record(self, user_id: str, now: datetime) -> RefreshToken:
        return RefreshToken(
            id=str(uuid.uuid4()),
            token=self.tokens.issue_refresh_token(user_id, now=now),
            user_id=user_id,
            expires_at=self.tokens.refresh_expires_at(now),
            created_at=now,
        )

    def _result(self, user: User, refresh_token: str, now: datetime) -> AuthResult:
        return AuthResult(
            user=SafeUser.from_user(user),
            access_token=self.tokens.issue_access_token(user, now=now),
            refresh_token=refresh_token,
            expires_in=self.tokens.access_token_ttl_seconds,
        )

    def _start_session(self, user: User) -> AuthResult:
        now = self._clock()
        record = self._new_refresh_record(user.id, now)
        with self._storage_errors("create_refresh_token"):
            self.store.create_refresh_token(record)
        return self._result(user, record.token, now)

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Role = Role.USER,
    ) -> AuthResult:
        with self._storage_errors("get_user_by_email"):
            existing = self.store.get_user_by_email(email)
        if existing:
            raise ConflictError("User with this email already exists", detail={"field": "email"})
        password_hash = await self.hasher.hash_async(password)
        try:
            with self._storage_errors("create_user"):
                user = self.store.create_user(
                    email, password_hash, first_name, last_name, role=Role(role)
                )
        except ConstraintViolation:
            # Lost a race with a concurrent registration of the same email
            raise ConflictError("User with this email already exists", detail={"field": "email"})
        result = self._start_session(user)
        log_audit("user_registered", user_id=user.id, role=user.role.value)
        return result

    async def login(self, email: str, password: str) -> AuthResult:
        with self._storage_errors("get_user_by_email"):
            user = self.store.get_user_by_email(email)
        if user is None:
            await self.hasher.burn_verification(password)
            self.logger.info("login_failed", reason="unknown_user")
            raise AuthenticationError("Invalid credentials")
        password_ok = await self.hasher.verify_async(user.password_hash, password)
        if not password_ok or not user.is_active:
            self.logger.info(
                "login_failed",
                reason="inactive_user" if password_ok else "bad_password",
                user_id=user.id,
            )
            raise AuthenticationError("Invalid credentials")
        changes: dict[str, Any] = {"last_login_at": self._clock()}
        if self.hasher.needs_rehash(user.password_hash):
            # Stored hash predates the current cost settings
            changes["password_hash"] = await self.hasher.hash_async(password)
            self.logger.info("password_rehashed", user_id=user.id)
        with self._storage_errors("update_user"):
            user = self.store.update_user(user.id, **changes) or user
        result = self._start_session(user)
        log_audit("user_login", user_id=user.id)
        return result

    async def refresh(self, token: str) -> AuthResult:
        with self._storage_errors("get_refresh_token"):
            record = self.store.get_refresh_token(token)
        if record is None:
            raise AuthenticationError("Invalid refresh token")
        with self._storage_errors("get_user"):
            user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("Invalid refresh token")

        now = self._clock()
        if record.expires_at <= now:
            with self._storage_errors("delete_refresh_token"):
                self.store.delete_refresh_token(token)
            raise TokenExpiredError("Refresh token expired")

        try:
            claims = self.tokens.verify_refresh_token_signature(token)
            if claims.user_id != record.user_id:
                raise InvalidTokenError("refresh token subject mismatch")
        except InvalidTokenError:
            self.logger.warning("refresh_token_signature_invalid", user_id=record.user_id)
            with self._storage_errors("delete_refresh_token"):
                self.store.delete_refresh_token(token)
            raise AuthenticationError("Invalid refresh token")

        new_record = self._new_refresh_record(user.id, now)
        with self._storage_errors("rotate_refresh_token"):
            rotated = self.store.rotate_refresh_token(token, new_record)
        if not rotated:
            # A concurrent redemption consumed the row first
            self.logger.warning("refresh_token_already_consumed", user_id=user.id)
            raise AuthenticationError("Invalid refresh token")
        return self._result(user, new_record.token, now)

    async def logout(self, token: str) -> None:
        with self._storage_errors("logout"):
            record = self.store.get_refresh_token(token)
            removed = self.store.delete_refresh_token(token)
        log_audit(
            "user_logout",
            user_id=record.user_id if record else None,
            revoked=removed,
        )

    async def get_profile(self, user_id: str) -> Optional[SafeUser]:
        with self._storage_errors("get_user"):
            user = self.store.get_user(user_id)
        return SafeUser.from_user(user) if user else None

    async def update_profile(self, user_id: str, fields: Mapping[str, Any]) -> SafeUser:
        changes = {key: value for key, value in fields.items() if value is not None}
        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(
                "Unsupported profile fields", detail={"fields": sorted(unknown)}
            )
        if not changes:
            raise ValidationError("At least one field must be provided for update")

        with self._storage_errors("get_user"):
            user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")

        new_email = changes.get("email")
        if new_email is not None and new_email != user.email:
            with self._storage_errors("get_user_by_email"):
                other = self.store.get_user_by_email(new_email)
            if other is not None and other.id != user_id:
                raise ConflictError("Email already in use", detail={"field": "email"})

        password = changes.pop("password", None)
        if password is not None:
            changes["password_hash"] = await self.hasher.hash_async(password)

        try:
            with self._storage_errors("update_user"):
                updated = self.store.update_user(user_id, **changes)
        except ConstraintViolation:
            raise ConflictError("Email already in use", detail={"field": "email"})
        if updated is None:
            raise NotFoundError("User not found")
        log_audit(
            "user_profile_updated",
            user_id=user_id,
            changed=sorted(k for k in fields if fields[k] is not None),
        )
        return SafeUser.from_user(updated)

    async def list_users(self, *, actor_id: Optional[str] = None) -> List[SafeUser]:
        with self._storage_errors("list_users"):
            users = self.store.list_users()
        log_audit("admin_viewed_users", user_id=actor_id, count=len(users))
        return [SafeUser.from_user(user) for user in users]

    async def deactivate_user(
        self, user_id: str, *, actor_id: Optional[str] = None
    ) -> SafeUser:
        """Mark the user inactive and revoke every refresh token they hold.

        Access tokens already issued stay valid until they expire.
        """
        with self._storage_errors("deactivate_user"):
            user = self.store.deactivate_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        log_audit("user_deactivated", user_id=user_id, actor_id=actor_id)
        return SafeUser.from_user(user)

    async def sweep_expired_tokens(self) -> int:
        with self._storage_errors("delete_expired_refresh_tokens"):
            removed = self.store.delete_expired_refresh_tokens(self._clock())
        log_audit("refresh_tokens_swept", removed=removed)
        return removed
