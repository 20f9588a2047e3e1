import contextlib
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from expensegate.storage.errors import ConstraintViolation, StoreUnavailable
from expensegate.storage.postgres import PostgresStore

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    """Records executed statements and replays scripted results or errors."""

    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class StubPool:
    def __init__(self, *results, error=None):
        self.conn = FakeConnection(results)
        self.error = error

    @contextlib.contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn

    def close(self):
        pass


def _store(pool):
    return PostgresStore("postgresql://unused", pool=pool, ensure_schema=False)


def _account_row(**overrides):
    row = {
        "id": "acct-1",
        "code": "sunrise",
        "role": "family",
        "name": "Robin",
        "valid_until": None,
        "is_active": True,
        "is_revoked": False,
        "is_banned": False,
        "last_login": None,
        "last_logout": None,
        "last_ip_address": None,
        "ip_history": [],
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_increment_attempt_is_a_single_upsert():
    pool = StubPool(
        FakeCursor(row={"ip_address": "10.0.0.1", "attempts": 3, "last_attempt_at": NOW})
    )
    store = _store(pool)

    record = store.increment_attempt("10.0.0.1", NOW, timedelta(minutes=60))

    assert record.attempts == 3
    assert record.last_attempt_at == NOW
    assert len(pool.conn.executed) == 1
    sql, params = pool.conn.executed[0]
    assert "ON CONFLICT (ip_address) DO UPDATE" in sql
    assert "failed_login.attempts + 1" in sql
    assert params == {"ip": "10.0.0.1", "now": NOW, "window": timedelta(minutes=60)}


def test_increment_attempt_canonicalizes_ip():
    pool = StubPool(
        FakeCursor(row={"ip_address": "2001:db8::1", "attempts": 1, "last_attempt_at": NOW})
    )

    _store(pool).increment_attempt("2001:0db8::0001", NOW, timedelta(minutes=60))

    assert pool.conn.executed[0][1]["ip"] == "2001:db8::1"


def test_record_account_ip_appends_in_one_statement():
    pool = StubPool(
        FakeCursor(row=_account_row(last_ip_address="10.0.0.2", ip_history=["10.0.0.2"]))
    )

    account = _store(pool).record_account_ip("acct-1", "10.0.0.2")

    assert account.ip_history == ["10.0.0.2"]
    sql, params = pool.conn.executed[0]
    assert sql.startswith("UPDATE account SET")
    assert "= ANY(ip_history)" in sql
    assert "array_append" in sql
    assert params == {"ip": "10.0.0.2", "id": "acct-1"}


def test_find_session_filters_by_account_and_token():
    row = {
        "id": "sess-1",
        "account_id": "acct-1",
        "token": "tok",
        "revoked": True,
        "banned": False,
        "created_at": NOW,
        "revoked_at": NOW,
    }
    pool = StubPool(FakeCursor(row=row))

    session = _store(pool).find_session("acct-1", "tok")

    assert session.revoked
    assert session.revoked_at == NOW
    assert pool.conn.executed[0][1] == ("acct-1", "tok")


def test_ban_account_sets_all_status_flags():
    pool = StubPool(
        FakeCursor(row=_account_row(is_active=False, is_revoked=True, is_banned=True))
    )

    account = _store(pool).ban_account("acct-1")

    assert account.is_banned
    sql, params = pool.conn.executed[0]
    assert "is_active = %(is_active)s" in sql
    assert params["is_banned"] is True
    assert params["is_revoked"] is True
    assert params["is_active"] is False


def test_status_check_violation_becomes_constraint_violation():
    pool = StubPool(errors.CheckViolation("account_ban_implies_revoke"))

    with pytest.raises(ConstraintViolation):
        _store(pool).update_account("acct-1", is_banned=True)


def test_update_rejects_unknown_columns_before_querying():
    pool = StubPool()

    with pytest.raises(ConstraintViolation):
        _store(pool).update_account("acct-1", last_ip_address="1.2.3.4")
    assert pool.conn.executed == []


def test_duplicate_session_token_is_constraint_violation():
    pool = StubPool(errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation):
        _store(pool).create_session("acct-1", "tok")


def test_connection_failure_is_store_unavailable():
    pool = StubPool(error=psycopg.OperationalError("connection refused"))

    with pytest.raises(StoreUnavailable) as excinfo:
        _store(pool).find_session("acct-1", "tok")
    assert excinfo.value.backend == "postgres"


def test_get_lockout_missing_returns_none():
    pool = StubPool(FakeCursor(row=None))

    assert _store(pool).get_lockout("10.0.0.1") is None
