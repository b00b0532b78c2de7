from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionward.logging import get_logger
from sessionward.storage.common import (
    hash_token,
    normalize_email,
    plan_rotation,
)
from sessionward.storage.errors import ConstraintViolation, StoreUnavailable
from sessionward.storage.models import (
    CredentialRecord,
    NewSession,
    PublicProfile,
    Rotation,
    SessionRecord,
    new_refresh_token,
)

_SESSION_COLUMNS = (
    "id, subject_id, current_token_hash, previous_token_hash, rotation_counter, "
    "issued_at, last_refreshed_at, expires_at, revoked, revoked_at, "
    "revoked_reason, client_label"
)


class PostgresStore:
    """Postgres-backed user directory and session store.

    Rotation takes a ``SELECT ... FOR UPDATE`` row lock inside one
    transaction, so concurrent refreshes of the same session serialize in the
    database regardless of how many API workers are running.
    """

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

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc), backend="postgres") from exc

    def _ensure_schema(self) -> None:
        """Create the credential and session tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credential (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    display_name TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refresh_session (
                    id TEXT PRIMARY KEY,
                    subject_id TEXT NOT NULL REFERENCES credential(id) ON DELETE CASCADE,
                    current_token_hash TEXT NOT NULL,
                    previous_token_hash TEXT,
                    rotation_counter BIGINT NOT NULL DEFAULT 0,
                    issued_at TIMESTAMPTZ NOT NULL,
                    last_refreshed_at TIMESTAMPTZ,
                    expires_at TIMESTAMPTZ NOT NULL,
                    revoked BOOLEAN NOT NULL DEFAULT FALSE,
                    revoked_at TIMESTAMPTZ,
                    revoked_reason TEXT,
                    client_label TEXT NOT NULL DEFAULT 'web'
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_session_subject_idx "
                "ON refresh_session (subject_id)"
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    @staticmethod
    def _row_to_credentials(row: Dict[str, Any]) -> CredentialRecord:
        return CredentialRecord(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            display_name=row.get("display_name"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            subject_id=row["subject_id"],
            current_token_hash=row["current_token_hash"],
            previous_token_hash=row.get("previous_token_hash"),
            rotation_counter=int(row.get("rotation_counter") or 0),
            issued_at=row["issued_at"],
            last_refreshed_at=row.get("last_refreshed_at"),
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked")),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            client_label=row.get("client_label") or "web",
        )

    # user directory
    def create_user(
        self,
        email: str,
        password_hash: str,
        now: datetime,
        *,
        display_name: Optional[str] = None,
    ) -> CredentialRecord:
        record = CredentialRecord.new(
            normalize_email(email), password_hash, now, display_name=display_name
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO credential (id, email, password_hash, display_name, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.email,
                        record.password_hash,
                        record.display_name,
                        record.created_at,
                        record.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return record

    def find_by_email(self, email: str) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_credentials(row) if row else None

    def get_credentials(self, user_id: str) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_credentials(row) if row else None

    def find_by_id(self, user_id: str) -> Optional[PublicProfile]:
        record = self.get_credentials(user_id)
        return record.to_profile() if record else None

    def update_password_hash(self, user_id: str, password_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE credential SET password_hash = %s, updated_at = %s WHERE id = %s",
                (password_hash, now, user_id),
            )
            return bool(cur.rowcount)

    # sessions
    def create_session(
        self,
        subject_id: str,
        client_label: str,
        now: datetime,
        ttl: timedelta,
    ) -> NewSession:
        token = new_refresh_token()
        record = SessionRecord.new(
            subject_id, hash_token(token), now, ttl, client_label=client_label
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_session (id, subject_id, current_token_hash, rotation_counter, issued_at, expires_at, client_label)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.subject_id,
                        record.current_token_hash,
                        record.rotation_counter,
                        record.issued_at,
                        record.expires_at,
                        record.client_label,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session subject missing", {"subject_id": subject_id})
        return NewSession(record=record, refresh_token=token)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM refresh_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_subject_sessions(self, subject_id: str) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM refresh_session WHERE subject_id = %s ORDER BY issued_at",
                (subject_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def rotate(
        self,
        session_id: str,
        presented_token: str,
        now: datetime,
        *,
        reuse_grace: timedelta = timedelta(0),
    ) -> Rotation:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM refresh_session WHERE id = %s FOR UPDATE",
                    (session_id,),
                ).fetchone()
                record = self._row_to_session(row) if row else None
                plan = plan_rotation(record, presented_token, now, reuse_grace)
                if plan.updated is not None:
                    updated = plan.updated
                    conn.execute(
                        """
                        UPDATE refresh_session
                        SET current_token_hash = %s, previous_token_hash = %s, rotation_counter = %s,
                            last_refreshed_at = %s, revoked = %s, revoked_at = %s, revoked_reason = %s
                        WHERE id = %s
                        """,
                        (
                            updated.current_token_hash,
                            updated.previous_token_hash,
                            updated.rotation_counter,
                            updated.last_refreshed_at,
                            updated.revoked,
                            updated.revoked_at,
                            updated.revoked_reason,
                            session_id,
                        ),
                    )
        # Raised only after the transaction (and any revocation) has committed
        plan.raise_if_rejected(session_id)
        return Rotation(
            refresh_token=plan.refresh_token,
            epoch=plan.updated.rotation_counter,
            record=plan.updated,
        )

    def revoke_session(self, session_id: str, now: datetime, reason: str = "logout") -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_session SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND revoked = FALSE
                """,
                (now, reason, session_id),
            )
            return bool(cur.rowcount)

    def revoke_subject_sessions(self, subject_id: str, now: datetime, reason: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_session SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE subject_id = %s AND revoked = FALSE
                """,
                (now, reason, subject_id),
            )
            return int(cur.rowcount or 0)


__all__ = ["PostgresStore"]
