from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from refreshguard.logging import get_logger
from refreshguard.storage.errors import ConstraintViolation, StorageUnavailable
from refreshguard.storage.models import (
    ClientInfo,
    RefreshTokenRecord,
    ensure_utc,
    utcnow,
)

_COLUMNS = (
    "id, user_id, family_id, token_hash, issued_at, expires_at, max_expiry, "
    "revoked, replaced_by, ip_address, user_agent, updated_at"
)


class PostgresTokenStore:
    """Postgres-backed refresh token store.

    Rotation relies on ``rotate`` running its conditional UPDATE and the
    successor INSERT in one transaction, so two concurrent rotations of one
    record cannot both win and a consumed record never leaves two tips.
    """

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except PoolTimeout as exc:
            raise StorageUnavailable(
                "timed out waiting for a database connection", operation=operation
            ) from exc
        except errors.QueryCanceled as exc:
            raise StorageUnavailable(
                "database statement timed out", operation=operation
            ) from exc
        except psycopg.OperationalError as exc:
            raise StorageUnavailable(
                f"database unavailable: {exc}", operation=operation
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``refresh_token`` table and its indexes if missing."""

        with self._connect("ensure_schema") as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refresh_token (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    family_id TEXT NOT NULL,
                    token_hash TEXT NOT NULL UNIQUE,
                    issued_at TIMESTAMPTZ NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    max_expiry TIMESTAMPTZ NOT NULL,
                    revoked BOOLEAN NOT NULL DEFAULT FALSE,
                    replaced_by TEXT,
                    ip_address TEXT,
                    user_agent TEXT,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CHECK (expires_at <= max_expiry)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_token_max_expiry_idx ON refresh_token (max_expiry)"
            )

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            family_id=str(row["family_id"]),
            token_hash=row["token_hash"],
            issued_at=ensure_utc(row["issued_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            max_expiry=ensure_utc(row["max_expiry"]),
            revoked=bool(row["revoked"]),
            replaced_by=row.get("replaced_by"),
            client_info=ClientInfo(
                ip_address=row.get("ip_address"), user_agent=row.get("user_agent")
            ),
            updated_at=ensure_utc(row["updated_at"]),
        )

    @staticmethod
    def _insert(conn: psycopg.Connection, record: RefreshTokenRecord) -> None:
        conn.execute(
            f"""
            INSERT INTO refresh_token ({_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.family_id,
                record.token_hash,
                record.issued_at,
                record.expires_at,
                record.max_expiry,
                record.revoked,
                record.replaced_by,
                record.client_info.ip_address,
                record.client_info.user_agent,
                record.updated_at,
            ),
        )

    def create(self, record: RefreshTokenRecord) -> str:
        try:
            with self._connect("create") as conn:
                self._insert(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"id": record.id})
        return record.id

    def get(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._connect("get") as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def find_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect("find_by_hash") as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM refresh_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def try_mark_revoked(
        self,
        token_id: str,
        *,
        expected_revoked: bool = False,
        replaced_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._connect("try_mark_revoked") as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE,
                    replaced_by = COALESCE(%s, replaced_by),
                    updated_at = %s
                WHERE id = %s AND revoked = %s
                """,
                (replaced_by, now or utcnow(), token_id, expected_revoked),
            )
            return cur.rowcount == 1

    def rotate(
        self,
        old_id: str,
        successor: RefreshTokenRecord,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """Consume ``old_id`` and insert ``successor`` in one transaction.

        A concurrent rotation of the same row blocks on the row lock and then
        matches nothing, so only one successor is ever inserted.
        """
        try:
            with self._connect("rotate") as conn, conn.transaction():
                cur = conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE, replaced_by = %s, updated_at = %s
                    WHERE id = %s AND revoked = FALSE
                    """,
                    (successor.id, now or utcnow(), old_id),
                )
                if cur.rowcount != 1:
                    return False
                self._insert(conn, successor)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"id": successor.id})
        return True

    def revoke_all_for_user(self, user_id: str, *, now: Optional[datetime] = None) -> int:
        with self._connect("revoke_all_for_user") as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, updated_at = %s
                WHERE user_id = %s AND revoked = FALSE
                """,
                (now or utcnow(), user_id),
            )
            return cur.rowcount

    def list_active_for_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]:
        now = now or utcnow()
        with self._connect("list_active_for_user") as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM refresh_token
                WHERE user_id = %s AND revoked = FALSE
                  AND expires_at >= %s AND max_expiry >= %s
                ORDER BY issued_at DESC
                """,
                (user_id, now, now),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count_active_for_user(self, user_id: str, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._connect("count_active_for_user") as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS active FROM refresh_token
                WHERE user_id = %s AND revoked = FALSE
                  AND expires_at >= %s AND max_expiry >= %s
                """,
                (user_id, now, now),
            ).fetchone()
        return int(row["active"]) if row else 0

    def delete_where(
        self, *, now: datetime, revoked_before: datetime, batch_size: int
    ) -> int:
        with self._connect("delete_where") as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_token WHERE id IN (
                    SELECT id FROM refresh_token
                    WHERE max_expiry < %s
                       OR expires_at < %s
                       OR (revoked = TRUE AND updated_at < %s)
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                """,
                (now, now, revoked_before, batch_size),
            )
            return cur.rowcount

    def close(self) -> None:
        self.pool.close()
