from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterable, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from todo_api.logging import get_logger, mask_url_password
from todo_api.storage.errors import ConstraintViolation, StoreUnavailable
from todo_api.storage.models import (
    IssuedToken,
    LoginFailureRecord,
    TokenKind,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        family_name VARCHAR(100) NOT NULL,
        given_name VARCHAR(100) NOT NULL,
        email VARCHAR(254) NOT NULL UNIQUE,
        hashed_password VARCHAR(255) NOT NULL,
        role_code TEXT NOT NULL DEFAULT 'user',
        active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_failed_histories (
        user_id UUID PRIMARY KEY REFERENCES users (id) ON DELETE CASCADE,
        number_of_attempts INTEGER NOT NULL,
        attempted_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_tokens (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        token_key VARCHAR(255) NOT NULL,
        kind TEXT NOT NULL,
        expired_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_tokens_user_id_idx ON user_tokens (user_id)",
)


class PostgresStore:
    """Postgres-backed store for users, login failures and the token ledger."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()
        self.logger.info("postgres_store_ready", dsn=mask_url_password(dsn))

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("postgres", "query") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            family_name=row["family_name"],
            given_name=row["given_name"],
            email=row["email"],
            role=row.get("role_code", "user"),
            is_active=row.get("active", True),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _failure_from_row(row: dict) -> LoginFailureRecord:
        return LoginFailureRecord(
            user_id=str(row["user_id"]),
            number_of_attempts=int(row["number_of_attempts"]),
            attempted_at=row["attempted_at"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        family_name: str,
        given_name: str,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, family_name, given_name, email, hashed_password, role_code, active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, family_name, given_name, email, password_hash, role, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def update_user(
        self,
        user_id: str,
        *,
        family_name: Optional[str] = None,
        given_name: Optional[str] = None,
        email: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[User]:
        columns = {
            "family_name": family_name,
            "given_name": given_name,
            "email": email,
            "active": is_active,
        }
        assignments = [(col, val) for col, val in columns.items() if val is not None]
        if not assignments:
            return self.get_user(user_id)
        set_clause = ", ".join(f"{col} = %s" for col, _ in assignments)
        params = [val for _, val in assignments] + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE users SET {set_clause}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            return None
        return self._user_from_row(row)

    def record_login(self, user_id: str, logged_in_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_login_at = %s WHERE id = %s",
                (logged_in_at, user_id),
            )

    # credentials
    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT hashed_password FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return str(row["hashed_password"])

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET hashed_password = %s, updated_at = now() WHERE id = %s RETURNING id",
                (password_hash, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})

    # login failures
    def get_login_failure(self, user_id: str) -> Optional[LoginFailureRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM login_failed_histories WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._failure_from_row(row)

    def record_login_failure(
        self, user_id: str, attempted_at: datetime, window_seconds: int
    ) -> LoginFailureRecord:
        # One statement so concurrent failures serialize on the row lock
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO login_failed_histories (user_id, number_of_attempts, attempted_at)
                VALUES (%s, 1, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                    number_of_attempts = CASE
                        WHEN EXCLUDED.attempted_at - login_failed_histories.attempted_at
                             >= make_interval(secs => %s)
                        THEN 1
                        ELSE login_failed_histories.number_of_attempts + 1
                    END,
                    attempted_at = CASE
                        WHEN EXCLUDED.attempted_at - login_failed_histories.attempted_at
                             >= make_interval(secs => %s)
                        THEN EXCLUDED.attempted_at
                        ELSE login_failed_histories.attempted_at
                    END,
                    updated_at = now()
                RETURNING *
                """,
                (user_id, attempted_at, window_seconds, window_seconds),
            ).fetchone()
        return self._failure_from_row(row)

    def clear_login_failures(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM login_failed_histories WHERE user_id = %s", (user_id,)
            )

    # token ledger
    def add_issued_tokens(self, entries: Iterable[IssuedToken]) -> None:
        rows = [
            (entry.id, entry.user_id, entry.token_key, entry.kind.value, entry.expires_at)
            for entry in entries
        ]
        if not rows:
            return
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO user_tokens (id, user_id, token_key, kind, expired_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    rows,
                )

    def pop_issued_tokens(self, user_id: str) -> List[IssuedToken]:
        """Delete and return every ledger row for the user in one statement."""
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM user_tokens WHERE user_id = %s RETURNING *", (user_id,)
            ).fetchall()
        return [
            IssuedToken(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                token_key=row["token_key"],
                kind=TokenKind(row["kind"]),
                expires_at=row["expired_at"],
                created_at=row.get("created_at") or utcnow(),
            )
            for row in rows
        ]
