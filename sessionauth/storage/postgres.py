from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionauth.logging import get_logger
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import Principal, RefreshRecord, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        username TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        full_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        CONSTRAINT app_user_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        username TEXT NOT NULL REFERENCES app_user (username) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        user_agent TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_active_idx ON refresh_token (username) WHERE NOT revoked",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)

# Unique constraint name -> request field reported back to the caller
_UNIQUE_FIELDS = {
    "app_user_pkey": "username",
    "app_user_email_key": "email",
    "refresh_token_pkey": "token",
}


def _unique_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", None)
    if constraint in _UNIQUE_FIELDS:
        return _UNIQUE_FIELDS[constraint]
    message = str(exc)
    for name, field in _UNIQUE_FIELDS.items():
        if name in message:
            return field
    return "username"


class PostgresStore:
    """Postgres-backed store for principals and refresh tokens."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
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
        """Create the ``app_user`` and ``refresh_token`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_principal(row: dict[str, Any]) -> Principal:
        return Principal(
            username=row["username"],
            email=row["email"],
            secret_hash=row["password_hash"],
            full_name=row.get("full_name"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> RefreshRecord:
        return RefreshRecord(
            token=row["token"],
            username=row["username"],
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked", False)),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            created_at=row.get("created_at") or utcnow(),
        )

    # principals
    def create_principal(
        self,
        username: str,
        email: str,
        secret_hash: str,
        full_name: Optional[str] = None,
    ) -> Principal:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (username, email, password_hash, full_name)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, email, secret_hash, full_name),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_principal(row)

    def get_principal(self, username: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def update_principal(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        secret_hash: Optional[str] = None,
    ) -> Optional[Principal]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = COALESCE(%s, email),
                        full_name = COALESCE(%s, full_name),
                        password_hash = COALESCE(%s, password_hash),
                        updated_at = now()
                    WHERE username = %s
                    RETURNING *
                    """,
                    (email, full_name, secret_hash, username),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_principal(row) if row else None

    def count_principals(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM app_user").fetchone()
        return int(row["n"]) if row else 0

    # refresh tokens
    def create_refresh_record(self, record: RefreshRecord, *, max_active: int) -> int:
        """Insert ``record``, first revoking every active record if at capacity.

        The owner's row is locked for the transaction so concurrent creates for
        one user serialize on the capacity check.
        """
        try:
            with self._connect() as conn:
                owner = conn.execute(
                    "SELECT username FROM app_user WHERE username = %s FOR UPDATE",
                    (record.username,),
                ).fetchone()
                if not owner:
                    raise ConstraintViolation(
                        "refresh token owner missing", {"username": record.username}
                    )
                active = conn.execute(
                    "SELECT COUNT(*) AS n FROM refresh_token WHERE username = %s AND NOT revoked",
                    (record.username,),
                ).fetchone()
                revoked = 0
                if active and int(active["n"]) >= max_active:
                    cursor = conn.execute(
                        "UPDATE refresh_token SET revoked = TRUE WHERE username = %s AND NOT revoked",
                        (record.username,),
                    )
                    revoked = cursor.rowcount
                self._insert_record(conn, record)
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return revoked

    @staticmethod
    def _insert_record(conn, record: RefreshRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (token, username, expires_at, revoked, user_agent, ip_address, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.token,
                record.username,
                record.expires_at,
                record.revoked,
                record.user_agent,
                record.ip_address,
                record.created_at,
            ),
        )

    def get_refresh_record(self, token: str) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def count_active_refresh(self, username: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM refresh_token WHERE username = %s AND NOT revoked",
                (username,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def revoke_refresh_record(self, token: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE token = %s AND NOT revoked",
                (token,),
            )
            return cursor.rowcount > 0

    def revoke_all_refresh(self, username: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE username = %s AND NOT revoked",
                (username,),
            )
            return cursor.rowcount

    def rotate_refresh_record(
        self, old_token: str, replacement: RefreshRecord, *, now: datetime
    ) -> bool:
        """Revoke ``old_token`` and insert ``replacement`` in one transaction.

        The conditional UPDATE takes the row lock; a racing rotation blocks on it,
        re-evaluates ``NOT revoked`` after commit and matches nothing.
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE
                    WHERE token = %s AND NOT revoked AND expires_at > %s
                    RETURNING username
                    """,
                    (old_token, now),
                ).fetchone()
                if not row:
                    return False
                self._insert_record(conn, replacement)
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return True

    def delete_expired_refresh(self, before: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (before,)
            )
            return cursor.rowcount
