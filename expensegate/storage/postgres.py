from __future__ import annotations

import contextlib
from datetime import datetime, timedelta
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from expensegate.logging import get_logger
from expensegate.storage.common import (
    check_account_update,
    generate_uuid,
    normalize_ip_address,
    safe_row_value,
    to_utc,
    validate_role,
)
from expensegate.storage.errors import ConstraintViolation, StoreUnavailable
from expensegate.storage.models import Account, LockoutRecord, Session, utcnow

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL CHECK (role IN ('viewer', 'family', 'admin')),
    name TEXT,
    valid_until TIMESTAMPTZ,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
    is_banned BOOLEAN NOT NULL DEFAULT FALSE,
    last_login TIMESTAMPTZ,
    last_logout TIMESTAMPTZ,
    last_ip_address TEXT,
    ip_history TEXT[] NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT account_ban_implies_revoke CHECK (NOT is_banned OR is_revoked),
    CONSTRAINT account_revoke_implies_inactive CHECK (NOT is_revoked OR NOT is_active)
);

CREATE TABLE IF NOT EXISTS auth_session (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    token TEXT NOT NULL,
    revoked BOOLEAN NOT NULL DEFAULT FALSE,
    banned BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    revoked_at TIMESTAMPTZ,
    UNIQUE (account_id, token)
);

CREATE TABLE IF NOT EXISTS failed_login (
    ip_address TEXT PRIMARY KEY,
    attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    last_attempt_at TIMESTAMPTZ NOT NULL
);
"""

# Single statement so concurrent attempts from one IP serialize on the row lock.
_INCREMENT_ATTEMPT_SQL = """
INSERT INTO failed_login (ip_address, attempts, last_attempt_at)
VALUES (%(ip)s, 1, %(now)s)
ON CONFLICT (ip_address) DO UPDATE SET
    attempts = CASE
        WHEN EXCLUDED.last_attempt_at - failed_login.last_attempt_at >= %(window)s THEN 1
        ELSE failed_login.attempts + 1
    END,
    last_attempt_at = EXCLUDED.last_attempt_at
RETURNING ip_address, attempts, last_attempt_at
"""

_RECORD_IP_SQL = """
UPDATE account SET
    last_ip_address = %(ip)s,
    ip_history = CASE
        WHEN %(ip)s = ANY(ip_history) THEN ip_history
        ELSE array_append(ip_history, %(ip)s)
    END,
    updated_at = now()
WHERE id = %(id)s
RETURNING *
"""


class PostgresStore:
    """Postgres-backed account, session and lockout store."""

    def __init__(self, dsn: str, *, pool: Any = None, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__)
            raise StoreUnavailable("database unavailable", backend="postgres") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            code=row["code"],
            role=row["role"],
            name=row.get("name"),
            valid_until=to_utc(row.get("valid_until")),
            is_active=safe_row_value(row, "is_active", True),
            is_revoked=safe_row_value(row, "is_revoked", False),
            is_banned=safe_row_value(row, "is_banned", False),
            last_login=to_utc(row.get("last_login")),
            last_logout=to_utc(row.get("last_logout")),
            last_ip_address=row.get("last_ip_address"),
            ip_history=list(safe_row_value(row, "ip_history", [])),
            created_at=to_utc(row.get("created_at")) or utcnow(),
            updated_at=to_utc(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token=row["token"],
            revoked=safe_row_value(row, "revoked", False),
            banned=safe_row_value(row, "banned", False),
            created_at=to_utc(row.get("created_at")) or utcnow(),
            revoked_at=to_utc(row.get("revoked_at")),
        )

    # accounts
    def create_account(
        self,
        code: str,
        role: str,
        *,
        name: Optional[str] = None,
        valid_until: Optional[datetime] = None,
        is_active: bool = True,
    ) -> Account:
        validate_role(role)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, code, role, name, valid_until, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (generate_uuid(), code, role, name, to_utc(valid_until), is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("access code already exists", {"code": code}) from exc
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_code(self, code: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE code = %s", (code,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(self, *, banned: Optional[bool] = None) -> List[Account]:
        with self._connect() as conn:
            if banned is None:
                rows = conn.execute(
                    "SELECT * FROM account ORDER BY created_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM account WHERE is_banned = %s ORDER BY created_at",
                    (banned,),
                ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def update_account(self, account_id: str, **updates: Any) -> Optional[Account]:
        check_account_update(updates)
        if not updates:
            return self.get_account(account_id)
        if "valid_until" in updates:
            updates["valid_until"] = to_utc(updates["valid_until"])
        # Column names come from ACCOUNT_MUTABLE_FIELDS, never from callers.
        assignments = ", ".join(f"{column} = %({column})s" for column in sorted(updates))
        params = {**updates, "account_id": account_id}
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {assignments}, updated_at = now() "
                    "WHERE id = %(account_id)s RETURNING *",
                    params,
                ).fetchone()
        except errors.CheckViolation as exc:
            raise ConstraintViolation(
                "account status invariant violated", {"account_id": account_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "access code already exists", {"code": updates.get("code")}
            ) from exc
        return self._account_from_row(row) if row else None

    def revoke_account(self, account_id: str) -> Optional[Account]:
        return self.update_account(account_id, is_revoked=True, is_active=False)

    def ban_account(self, account_id: str) -> Optional[Account]:
        return self.update_account(
            account_id, is_banned=True, is_revoked=True, is_active=False
        )

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return bool(cur.rowcount)

    def record_account_ip(self, account_id: str, ip_addr: str) -> Optional[Account]:
        ip_text = normalize_ip_address(ip_addr)
        with self._connect() as conn:
            row = conn.execute(
                _RECORD_IP_SQL, {"ip": ip_text, "id": account_id}
            ).fetchone()
        return self._account_from_row(row) if row else None

    def mark_login(self, account_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login = %s WHERE id = %s",
                (to_utc(at), account_id),
            )

    def mark_logout(self, account_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_logout = %s WHERE id = %s",
                (to_utc(at), account_id),
            )

    # sessions
    def create_session(self, account_id: str, token: str) -> Session:
        sess = Session.new(account_id=account_id, token=token)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, token, revoked, banned, created_at)
                    VALUES (%s, %s, %s, FALSE, FALSE, %s)
                    """,
                    (sess.id, account_id, token, sess.created_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "account does not exist", {"account_id": account_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "token already issued", {"account_id": account_id}
            ) from exc
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session(self, account_id: str, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE account_id = %s AND token = %s",
                (account_id, token),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, *, revoked: Optional[bool] = None) -> List[Session]:
        with self._connect() as conn:
            if revoked is None:
                rows = conn.execute(
                    "SELECT * FROM auth_session ORDER BY created_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM auth_session WHERE revoked = %s ORDER BY created_at",
                    (revoked,),
                ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def revoke_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET revoked = TRUE, revoked_at = COALESCE(revoked_at, now())
                WHERE id = %s
                RETURNING *
                """,
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = now()
                WHERE account_id = %s AND revoked = FALSE
                  AND (%s::text IS NULL OR id <> %s::text)
                """,
                (account_id, except_session_id, except_session_id),
            )
            return cur.rowcount

    def ban_account_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET banned = TRUE WHERE account_id = %s AND banned = FALSE",
                (account_id,),
            )
            return cur.rowcount

    def delete_account_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s", (account_id,)
            )
            return cur.rowcount

    # lockout
    def increment_attempt(
        self, ip_addr: str, now: datetime, window: timedelta
    ) -> LockoutRecord:
        ip_text = normalize_ip_address(ip_addr)
        with self._connect() as conn:
            row = conn.execute(
                _INCREMENT_ATTEMPT_SQL,
                {"ip": ip_text, "now": to_utc(now), "window": window},
            ).fetchone()
        return LockoutRecord(
            ip_address=row["ip_address"],
            attempts=int(row["attempts"]),
            last_attempt_at=to_utc(row["last_attempt_at"]),
        )

    def get_lockout(self, ip_addr: str) -> Optional[LockoutRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM failed_login WHERE ip_address = %s",
                (normalize_ip_address(ip_addr),),
            ).fetchone()
        if not row:
            return None
        return LockoutRecord(
            ip_address=row["ip_address"],
            attempts=int(row["attempts"]),
            last_attempt_at=to_utc(row["last_attempt_at"]),
        )

    def close(self) -> None:
        self.pool.close()
