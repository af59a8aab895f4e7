from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from siteguard.logging import get_logger
from siteguard.storage.common import (
    UPDATABLE_PRINCIPAL_FIELDS,
    SecretCipher,
    deserialize_principal,
    deserialize_session,
    serialize_principal,
    serialize_session,
)
from siteguard.storage.errors import ConstraintViolation, StoreUnavailableError
from siteguard.storage.models import (
    AccountStatus,
    Appeal,
    BanRecord,
    Principal,
    Role,
    SessionRecord,
    SessionRow,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        doc JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS web_session (
        id TEXT PRIMARY KEY,
        doc JSONB NOT NULL,
        last_activity_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_session (
        session_id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        ip_addr TEXT,
        user_agent_hash TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_session_principal_idx ON login_session (principal_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS appeal (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        message TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'open',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store with the same surface as :class:`MemoryStore`.

    Connection and operational failures surface as
    :class:`StoreUnavailableError` so callers can decide to degrade or fail
    closed.
    """

    def __init__(self, dsn: str, *, encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.IntegrityError:
            # Constraint failures are mapped to ConstraintViolation by the caller
            raise
        except psycopg.Error as exc:
            self.logger.error("postgres_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailableError(operation, exc) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # principals
    def _principal_from_row(self, row: Optional[dict]) -> Optional[Principal]:
        if not row:
            return None
        principal = deserialize_principal(row["doc"])
        principal.two_factor_secret = self._cipher.decrypt(principal.two_factor_secret)
        return principal

    def _write_principal(self, conn: psycopg.Connection, principal: Principal) -> None:
        doc = serialize_principal(principal)
        doc["two_factor_secret"] = self._cipher.encrypt(principal.two_factor_secret)
        conn.execute(
            "UPDATE principal SET email = %s, doc = %s WHERE id = %s",
            (principal.email, json.dumps(doc), principal.id),
        )

    def create_principal(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        roles: Optional[Iterable[Role | str]] = None,
        status: AccountStatus = AccountStatus.ACTIVE,
        name: Optional[str] = None,
        password_changed_at: Optional[datetime] = None,
    ) -> Principal:
        principal = Principal(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name,
            password_hash=password_hash,
            assigned_roles={Role(r) for r in (roles or [Role.USER])},
            status=AccountStatus(status),
            password_changed_at=password_changed_at
            or (utcnow() if password_hash else None),
        )
        try:
            with self._connect("create_principal") as conn:
                conn.execute(
                    "INSERT INTO principal (id, email, doc, created_at) VALUES (%s, %s, %s, %s)",
                    (
                        principal.id,
                        principal.email,
                        json.dumps(serialize_principal(principal)),
                        principal.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect("get_principal") as conn:
            row = conn.execute(
                "SELECT doc FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect("get_principal_by_email") as conn:
            row = conn.execute(
                "SELECT doc FROM principal WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._principal_from_row(row)

    def list_principals(self, limit: int = 100) -> List[Principal]:
        with self._connect("list_principals") as conn:
            rows = conn.execute(
                "SELECT doc FROM principal ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [p for p in (self._principal_from_row(r) for r in rows) if p]

    def _mutate_principal(self, principal_id: str, operation: str, mutate) -> Optional[Principal]:
        with self._connect(operation) as conn:
            row = conn.execute(
                "SELECT doc FROM principal WHERE id = %s FOR UPDATE", (principal_id,)
            ).fetchone()
            principal = self._principal_from_row(row)
            if principal is None:
                return None
            mutate(principal)
            try:
                self._write_principal(conn, principal)
            except errors.UniqueViolation:
                raise ConstraintViolation("email already exists", {"field": "email"})
        return principal

    def update_principal(self, principal_id: str, **changes) -> Optional[Principal]:
        unknown = set(changes) - UPDATABLE_PRINCIPAL_FIELDS
        if unknown:
            raise ValueError(f"unsupported principal fields: {sorted(unknown)}")

        def _apply(principal: Principal) -> None:
            for key, value in changes.items():
                if key == "assigned_roles":
                    value = {Role(r) for r in value}
                elif key == "status":
                    value = AccountStatus(value)
                setattr(principal, key, value)

        return self._mutate_principal(principal_id, "update_principal", _apply)

    def set_ban(self, principal_id: str, ban: Optional[BanRecord]) -> Optional[Principal]:
        def _apply(principal: Principal) -> None:
            principal.ban = ban
            if ban is not None:
                principal.status = AccountStatus.BANNED
            elif principal.status == AccountStatus.BANNED:
                principal.status = AccountStatus.ACTIVE

        return self._mutate_principal(principal_id, "set_ban", _apply)

    def set_ml_block(self, principal_id: str, reason: Optional[str]) -> Optional[Principal]:
        def _apply(principal: Principal) -> None:
            principal.ml_blocked = reason is not None
            principal.ml_blocked_reason = reason
            principal.ml_blocked_at = utcnow() if reason is not None else None

        return self._mutate_principal(principal_id, "set_ml_block", _apply)

    def set_two_factor_secret(
        self,
        principal_id: str,
        secret: Optional[str],
        *,
        confirmed_at: Optional[datetime] = None,
    ) -> Optional[Principal]:
        def _apply(principal: Principal) -> None:
            principal.two_factor_secret = secret
            principal.two_factor_confirmed_at = confirmed_at if secret else None

        updated = self._mutate_principal(principal_id, "set_two_factor_secret", _apply)
        if updated is None:
            raise ConstraintViolation(
                "principal not found for two-factor", {"principal_id": principal_id}
            )
        return updated

    # appeals
    def has_open_appeal(self, principal_id: str) -> bool:
        with self._connect("has_open_appeal") as conn:
            row = conn.execute(
                "SELECT 1 FROM appeal WHERE principal_id = %s AND status = 'open' LIMIT 1",
                (principal_id,),
            ).fetchone()
        return row is not None

    def create_appeal(self, principal_id: str, message: str) -> Appeal:
        appeal = Appeal.new(principal_id, message)
        try:
            with self._connect("create_appeal") as conn:
                conn.execute(
                    """
                    INSERT INTO appeal (id, principal_id, message, status, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (appeal.id, principal_id, message, appeal.status, appeal.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found for appeal", {"principal_id": principal_id}
            )
        return appeal

    # session records
    def read_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._connect("read_session") as conn:
            row = conn.execute(
                "SELECT doc, last_activity_at FROM web_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        record = deserialize_session(row["doc"])
        # The column is authoritative; touches only advance the column
        record.last_activity_at = row["last_activity_at"]
        return record

    def write_session(self, record: SessionRecord) -> None:
        with self._connect("write_session") as conn:
            conn.execute(
                """
                INSERT INTO web_session (id, doc, last_activity_at, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (id) DO UPDATE
                SET doc = EXCLUDED.doc,
                    last_activity_at = CASE
                        WHEN EXCLUDED.last_activity_at IS NULL THEN NULL
                        ELSE GREATEST(web_session.last_activity_at, EXCLUDED.last_activity_at)
                    END,
                    updated_at = now()
                """,
                (record.id, json.dumps(serialize_session(record)), record.last_activity_at),
            )

    def delete_session(self, session_id: str) -> None:
        with self._connect("delete_session") as conn:
            conn.execute("DELETE FROM login_session WHERE session_id = %s", (session_id,))
            conn.execute("DELETE FROM web_session WHERE id = %s", (session_id,))

    def delete_idle_sessions(self, cutoff: datetime) -> int:
        with self._connect("delete_idle_sessions") as conn:
            rows = conn.execute(
                """
                DELETE FROM web_session
                WHERE COALESCE(last_activity_at, updated_at) < %s
                RETURNING id
                """,
                (cutoff,),
            ).fetchall()
            stale = [r["id"] for r in rows]
            if stale:
                conn.execute(
                    "DELETE FROM login_session WHERE session_id = ANY(%s)", (stale,)
                )
        return len(stale)

    def touch_session(self, session_id: str, at: datetime) -> Optional[datetime]:
        """Advance last activity without ever moving it backwards."""
        with self._connect("touch_session") as conn:
            row = conn.execute(
                """
                UPDATE web_session
                SET last_activity_at = GREATEST(COALESCE(last_activity_at, %s), %s),
                    updated_at = now()
                WHERE id = %s
                RETURNING last_activity_at
                """,
                (at, at, session_id),
            ).fetchone()
        return row["last_activity_at"] if row else None

    # canonical login rows
    def register_session_row(self, row: SessionRow) -> None:
        try:
            with self._connect("register_session_row") as conn:
                conn.execute(
                    """
                    INSERT INTO login_session (session_id, principal_id, created_at, ip_addr, user_agent_hash)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (session_id) DO UPDATE
                    SET principal_id = EXCLUDED.principal_id, created_at = EXCLUDED.created_at
                    """,
                    (
                        row.session_id,
                        row.principal_id,
                        row.created_at,
                        row.ip_addr,
                        row.user_agent_hash,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal does not exist", {"principal_id": row.principal_id}
            )

    def session_row_exists(self, session_id: str, principal_id: str) -> bool:
        with self._connect("session_row_exists") as conn:
            row = conn.execute(
                "SELECT 1 FROM login_session WHERE session_id = %s AND principal_id = %s",
                (session_id, principal_id),
            ).fetchone()
        return row is not None

    def list_session_rows(self, principal_id: str) -> List[SessionRow]:
        with self._connect("list_session_rows") as conn:
            rows = conn.execute(
                """
                SELECT session_id, principal_id, created_at, ip_addr, user_agent_hash
                FROM login_session WHERE principal_id = %s ORDER BY created_at
                """,
                (principal_id,),
            ).fetchall()
        return [SessionRow(**r) for r in rows]

    def delete_session_row(self, session_id: str) -> None:
        with self._connect("delete_session_row") as conn:
            conn.execute("DELETE FROM login_session WHERE session_id = %s", (session_id,))

    def delete_session_rows(
        self, principal_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._connect("delete_session_rows") as conn:
            rows = conn.execute(
                """
                DELETE FROM login_session
                WHERE principal_id = %s AND session_id IS DISTINCT FROM %s
                RETURNING session_id
                """,
                (principal_id, except_session_id),
            ).fetchall()
        return [r["session_id"] for r in rows]
