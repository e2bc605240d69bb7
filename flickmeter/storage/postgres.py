from __future__ import annotations

import contextlib
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from flickmeter.logging import get_logger
from flickmeter.storage.errors import (
    ConstraintViolation,
    RecordNotFound,
    StoreUnavailable,
)
from flickmeter.storage.models import RefreshToken, User

# Database constraint names mapped to the logical constraint they enforce.
# Length checks get their own names so they never read as uniqueness collisions.
_CONSTRAINT_FIELDS = {
    "users_username_key": "username",
    "users_email_key": "email",
    "users_username_length": "username_length",
    "users_email_length": "email_length",
    "refresh_pkey": "id",
    "refresh_user_id_fkey": "user_id",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        avatar_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT users_username_key UNIQUE (username),
        CONSTRAINT users_email_key UNIQUE (email),
        CONSTRAINT users_username_length CHECK (length(username) BETWEEN 5 AND 30),
        CONSTRAINT users_email_length CHECK (length(email) BETWEEN 3 AND 254)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh (
        id TEXT PRIMARY KEY CHECK (id <> ''),
        user_id INT NOT NULL,
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT refresh_user_id_fkey FOREIGN KEY (user_id)
            REFERENCES users(id) ON DELETE CASCADE
    )
    """,
)


def constraint_field(exc: Exception) -> Optional[str]:
    """Resolve the logical column behind a psycopg integrity error."""

    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None)
    if not name:
        return None
    return _CONSTRAINT_FIELDS.get(name, name)


def _set_statement_timeout(conn: psycopg.Connection, seconds: float) -> None:
    conn.execute(
        "SELECT set_config('statement_timeout', %s, true)",
        (f"{int(seconds * 1000)}ms",),
    )


class _PostgresUserTransaction:
    """User lookups and inserts bound to one open transaction."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def find_by_email(self, email: str) -> Optional[User]:
        row = self._conn.execute(
            "SELECT * FROM users WHERE email = %s", (email,)
        ).fetchone()
        return User.from_row(row) if row else None

    def insert_user(
        self, email: str, username: str, avatar_url: Optional[str] = None
    ) -> User:
        # Savepoint per attempt: a rejected insert must not poison the
        # enclosing transaction for the next candidate.
        try:
            with self._conn.transaction():
                row = self._conn.execute(
                    """
                    INSERT INTO users (email, username, avatar_url)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (email, username, avatar_url),
                ).fetchone()
        except (errors.UniqueViolation, errors.CheckViolation) as exc:
            field = constraint_field(exc)
            raise ConstraintViolation(
                f"{field or 'users'} constraint violated", {"field": field}
            ) from exc
        return User.from_row(row)


class PostgresStore:
    """Users and refresh tokens on a shared psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 3.0,
        provisioning_timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.provisioning_timeout_seconds = provisioning_timeout_seconds
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self, timeout: Optional[float] = None):
        return self.pool.connection(timeout=timeout or self.timeout_seconds)

    @contextlib.contextmanager
    def _translate_errors(self, op: str) -> Iterator[None]:
        try:
            yield
        except errors.QueryCanceled as exc:
            self.logger.warning("postgres_timeout", op=op)
            raise StoreUnavailable("postgres", f"{op} timed out") from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", op=op, error=str(exc))
            raise StoreUnavailable("postgres", f"{op} failed: {exc}") from exc

    def ensure_schema(self) -> None:
        """Create the ``users`` and ``refresh`` tables if they are missing."""

        with self._translate_errors("ensure_schema"), self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # users
    @contextlib.contextmanager
    def provisioning(self) -> Iterator[_PostgresUserTransaction]:
        """Open one transaction for a read-or-create pass.

        Commits when the block exits cleanly; any exception rolls the whole
        pass back, so a failed provisioning never leaves a partial user.
        """

        timeout = self.provisioning_timeout_seconds
        with self._translate_errors("provisioning"), self._connect(timeout) as conn:
            with conn.transaction():
                _set_statement_timeout(conn, timeout)
                yield _PostgresUserTransaction(conn)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._translate_errors("get_user"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return User.from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._translate_errors("get_user_by_email"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email,)
            ).fetchone()
        return User.from_row(row) if row else None

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> None:
        try:
            with self._translate_errors("create_refresh_token"), self._connect() as conn:
                _set_statement_timeout(conn, self.timeout_seconds)
                conn.execute(
                    """
                    INSERT INTO refresh (id, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token.id, token.user.id, token.expires_at, token.created_at),
                )
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            field = constraint_field(exc)
            raise ConstraintViolation(
                "refresh token rejected", {"field": field, "user_id": token.user.id}
            ) from exc

    def get_refresh_token(self, token_id: str) -> RefreshToken:
        """Resolve a refresh token together with the owner's current user row."""

        with self._translate_errors("get_refresh_token"), self._connect() as conn:
            _set_statement_timeout(conn, self.timeout_seconds)
            row = conn.execute(
                """
                SELECT r.id AS refresh_id,
                       r.expires_at AS refresh_expires_at,
                       r.created_at AS refresh_created_at,
                       u.*
                FROM refresh r
                JOIN users u ON u.id = r.user_id
                WHERE r.id = %s
                  AND (r.expires_at IS NULL OR r.expires_at > now())
                """,
                (token_id,),
            ).fetchone()
        if not row:
            raise RecordNotFound("refresh token not found")
        return self._row_to_refresh(row)

    @staticmethod
    def _row_to_refresh(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["refresh_id"]),
            user=User.from_row(row),
            expires_at=row.get("refresh_expires_at"),
            created_at=row["refresh_created_at"],
        )

    def delete_refresh_token(self, token_id: str) -> None:
        with self._translate_errors("delete_refresh_token"), self._connect() as conn:
            _set_statement_timeout(conn, self.timeout_seconds)
            conn.execute("DELETE FROM refresh WHERE id = %s", (token_id,))
