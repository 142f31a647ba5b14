from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import RefreshToken, Role, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'USER',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (email)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL,
        user_id UUID NOT NULL REFERENCES app_user (id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_token_key ON refresh_token (token)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)

_UPDATABLE_USER_COLUMNS = (
    "email",
    "password_hash",
    "first_name",
    "last_name",
    "role",
    "is_active",
    "last_login_at",
)


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        role=Role(row.get("role", Role.USER.value)),
        is_active=row.get("is_active", True),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_login_at=row.get("last_login_at"),
    )


def _row_to_refresh_token(row: dict) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        token=row["token"],
        user_id=str(row["user_id"]),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential store.

    Each public method runs on a pooled connection; the pool commits when the
    ``with`` block exits cleanly and rolls back on exception. Multi-statement
    operations (rotation, deactivation) additionally run inside an explicit
    transaction so they are all-or-nothing.
    """

    def __init__(
        self,
        dsn: str,
        *,
        clock: Callable[[], datetime] = utcnow,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._clock = clock
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the credential tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        user_id = str(uuid.uuid4())
        now = self._clock()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, first_name, last_name, role, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        password_hash,
                        first_name,
                        last_name,
                        Role(role).value,
                        is_active,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC"
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_USER_COLUMNS)
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        # Column names come from the allow-list above, never from input
        columns = [name for name in _UPDATABLE_USER_COLUMNS if name in fields]
        assignments = ", ".join(f"{name} = %s" for name in columns)
        params: list[Any] = [fields[name] for name in columns]
        params.extend([self._clock(), user_id])
        set_clause = f"{assignments}, updated_at = %s" if assignments else "updated_at = %s"
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {set_clause} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row) if row else None

    def deactivate_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "UPDATE app_user SET is_active = FALSE, updated_at = %s WHERE id = %s RETURNING *",
                    (self._clock(), user_id),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
                )
        return _row_to_user(row)

    # refresh tokens
    def _insert_refresh_token(self, conn, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, token, user_id, expires_at, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (record.id, record.token, record.user_id, record.expires_at, record.created_at),
        )

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return _row_to_refresh_token(row) if row else None

    def delete_refresh_token(self, token: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            return cur.rowcount

    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken) -> bool:
        """Delete ``old_token`` and insert ``new_record`` in one transaction.

        The ``DELETE ... RETURNING`` row lock makes concurrent redemptions of
        the same token serialize: only one caller sees the row come back.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    consumed = conn.execute(
                        "DELETE FROM refresh_token WHERE token = %s RETURNING id",
                        (old_token,),
                    ).fetchone()
                    if not consumed:
                        return False
                    self._insert_refresh_token(conn, new_record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return True

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (now,)
            )
            removed = cur.rowcount
        if removed:
            self.logger.info("expired_refresh_tokens_removed", count=removed)
        return removed
