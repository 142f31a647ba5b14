from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import RefreshToken, Role, User, utcnow

_UPDATABLE_USER_FIELDS = {
    "email",
    "password_hash",
    "first_name",
    "last_name",
    "role",
    "is_active",
    "last_login_at",
}


class MemoryStore:
    """In-process credential store used by tests and single-node development.

    Every public method takes ``_data_lock`` so each call is atomic with
    respect to the others; records are copied on the way in and out so
    callers cannot mutate shared state behind the lock.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        role: Role = Role.USER,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if self._find_by_email(email) is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = self._clock()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=Role(role),
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def _find_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return replace(user) if user else None

    def list_users(self) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = fields.get("email")
            if new_email is not None and new_email != user.email:
                other = self._find_by_email(new_email)
                if other is not None and other.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "role" in fields:
                fields["role"] = Role(fields["role"])
            updated = replace(user, **fields, updated_at=self._clock())
            self.users[user_id] = updated
            return replace(updated)

    def deactivate_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, is_active=False, updated_at=self._clock())
            self.users[user_id] = updated
            self._drop_user_tokens(user_id)
            return replace(updated)

    # refresh tokens
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            self._insert_refresh_token(record)
            return replace(record)

    def _insert_refresh_token(self, record: RefreshToken) -> None:
        if record.token in self.refresh_tokens:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        if record.user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        self.refresh_tokens[record.token] = replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def delete_refresh_token(self, token: str) -> int:
        with self._data_lock:
            return 1 if self.refresh_tokens.pop(token, None) else 0

    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken) -> bool:
        with self._data_lock:
            if old_token not in self.refresh_tokens:
                return False
            self._insert_refresh_token(new_record)
            del self.refresh_tokens[old_token]
            return True

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            return self._drop_user_tokens(user_id)

    def _drop_user_tokens(self, user_id: str) -> int:
        stale = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
        for token in stale:
            del self.refresh_tokens[token]
        return len(stale)

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.expires_at < now]
            for token in stale:
                del self.refresh_tokens[token]
            if stale:
                self.logger.info("expired_refresh_tokens_removed", count=len(stale))
            return len(stale)

    def verify_connection(self) -> None:
        return None
