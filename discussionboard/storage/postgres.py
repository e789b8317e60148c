from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from psycopg import Connection, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from discussionboard.logging import get_logger
from discussionboard.storage.errors import (
    ConstraintViolation,
    DuplicateKeyError,
    StoreError,
)
from discussionboard.storage.models import TokenRecord, TokenScope, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        first_name VARCHAR(100) NOT NULL,
        last_name VARCHAR(100) NOT NULL,
        email VARCHAR(254) UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tokens (
        hash BYTEA PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        expiry TIMESTAMPTZ NOT NULL,
        scope VARCHAR(50) NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tokens_user ON tokens(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_tokens_expiry ON tokens(expiry)",
)


class PostgresStore:
    """Postgres-backed user and token store.

    Every call checks a connection out of a bounded pool. Pool checkout and
    statement execution are both capped by ``timeout_seconds`` so an
    unreachable or stalled database surfaces as :class:`StoreError` instead
    of blocking the request thread.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout_seconds: float = 5.0,
        connect_attempts: int = 30,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        self._wait_for_database(connect_attempts)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, OperationalError) as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StoreError("database unavailable") from exc

    def _wait_for_database(self, attempts: int, delay_seconds: float = 1.0) -> None:
        for attempt in range(1, attempts + 1):
            try:
                self.ping()
                return
            except StoreError:
                if attempt == attempts:
                    raise
                self.logger.info(
                    "postgres_waiting", attempt=attempt, max_attempts=attempts
                )
                time.sleep(delay_seconds)

    def _ensure_schema(self) -> None:
        """Create the ``users`` and ``tokens`` tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    # users

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=int(row["id"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def create_user(
        self,
        first_name: str,
        last_name: str,
        email: str,
        password_hash: str,
        *,
        is_active: bool = False,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (first_name, last_name, email, password_hash, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, first_name, last_name, email, is_active, created_at
                    """,
                    (first_name, last_name, email, password_hash, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, first_name, last_name, email, is_active, created_at FROM users WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, first_name, last_name, email, is_active, created_at FROM users WHERE email = %s",
                (email,),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_password_hash(self, user_id: int) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return row["password_hash"] if row else None

    def set_user_active(self, user_id: int, is_active: bool = True) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET is_active = %s WHERE id = %s", (is_active, user_id)
            )
            return cur.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # tokens

    def insert_token(
        self, fingerprint: bytes, user_id: int, expiry: datetime, scope: TokenScope
    ) -> TokenRecord:
        scope = TokenScope(scope)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO tokens (hash, user_id, expiry, scope) VALUES (%s, %s, %s, %s)",
                    (fingerprint, user_id, expiry, scope.value),
                )
        except errors.UniqueViolation:
            raise DuplicateKeyError("token fingerprint already exists")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return TokenRecord(
            fingerprint=fingerprint, user_id=user_id, expiry=expiry, scope=scope
        )

    def lookup_token(
        self, fingerprint: bytes, scope: TokenScope, *, now: Optional[datetime] = None
    ) -> Optional[TokenRecord]:
        now = now or datetime.now(timezone.utc)
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT hash, user_id, expiry, scope FROM tokens
                WHERE hash = %s AND scope = %s AND expiry > %s
                """,
                (fingerprint, TokenScope(scope).value, now),
            ).fetchone()
        if not row:
            return None
        return TokenRecord(
            fingerprint=bytes(row["hash"]),
            user_id=int(row["user_id"]),
            expiry=row["expiry"],
            scope=TokenScope(row["scope"]),
        )

    def delete_token(self, fingerprint: bytes) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM tokens WHERE hash = %s", (fingerprint,))

    def sweep_expired_tokens(self, now: datetime, *, batch_size: int = 1000) -> int:
        """Delete expired tokens in short transactions of at most ``batch_size`` rows."""
        removed = 0
        while True:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    DELETE FROM tokens WHERE hash IN (
                        SELECT hash FROM tokens WHERE expiry <= %s LIMIT %s
                    )
                    """,
                    (now, batch_size),
                )
                deleted = max(cur.rowcount, 0)
            removed += deleted
            if deleted < batch_size:
                return removed
