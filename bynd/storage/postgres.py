from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from bynd.logging import get_logger
from bynd.storage.errors import ConstraintViolation, StoreUnavailable
from bynd.storage.models import RefreshTokenRecord, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        jti TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        family_id TEXT NOT NULL,
        prev_jti TEXT,
        replaced_by_jti TEXT,
        revoked BOOLEAN NOT NULL DEFAULT false,
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_family_idx ON refresh_token (family_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)


class PostgresStore:
    """Postgres-backed credential and refresh-token store.

    Safe to share between processes: the rotation compare-and-set is a single
    conditional ``UPDATE`` decided by the database.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("database pool exhausted", backend="postgres") from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_operational_error", error=str(exc))
            raise StoreUnavailable("database unavailable", backend="postgres") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            jti=row["jti"],
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            family_id=row["family_id"],
            prev_jti=row.get("prev_jti"),
            replaced_by_jti=row.get("replaced_by_jti"),
            revoked=bool(row.get("revoked", False)),
            reason=row.get("reason"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    # users
    def create_user(
        self, email: str, password_hash: str, *, password_algo: str = "argon2id"
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_user (id, email) VALUES (%s, %s) RETURNING created_at",
                    (user_id, normalized),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        created_at = row["created_at"] if row else utcnow()
        return User(id=user_id, email=normalized, created_at=created_at)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (
                        jti, token_hash, user_id, family_id, prev_jti, replaced_by_jti,
                        revoked, reason, created_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.jti,
                        record.token_hash,
                        record.user_id,
                        record.family_id,
                        record.prev_jti,
                        record.replaced_by_jti,
                        record.revoked,
                        record.reason,
                        record.created_at,
                        record.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "jti"})
        return record

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE jti = %s", (jti,)
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def mark_refresh_token_replaced(self, jti: str, new_jti: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET replaced_by_jti = %s
                WHERE jti = %s AND replaced_by_jti IS NULL
                """,
                (new_jti, jti),
            )
            return cur.rowcount == 1

    def revoke_refresh_token(self, jti: str, reason: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = true, reason = %s WHERE jti = %s",
                (reason, jti),
            )
            return cur.rowcount == 1

    def revoke_refresh_family(self, family_id: str, reason: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = true, reason = %s WHERE family_id = %s",
                (reason, family_id),
            )
            return cur.rowcount

    def list_refresh_family(self, family_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE family_id = %s ORDER BY created_at",
                (family_id,),
            ).fetchall()
        return [self._row_to_refresh(row) for row in rows]

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (now or utcnow(),)
            )
            return cur.rowcount
