import contextlib
from datetime import timedelta

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from bynd.logging import get_logger
from bynd.storage.errors import ConstraintViolation, StoreUnavailable
from bynd.storage.models import RefreshTokenRecord, utcnow
from bynd.storage.postgres import PostgresStore


class DummyCursor:
    def __init__(self, rowcount=0, row=None, rows=None):
        self.rowcount = rowcount
        self._row = row
        self._rows = rows or []

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class DummyConnection:
    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else DummyCursor()
        if isinstance(result, Exception):
            raise result
        return result


class DummyPool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextlib.contextmanager
    def connection(self):
        if self.error:
            raise self.error
        if self.conn is None:
            raise AssertionError("database access should be stubbed in unit tests")
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.pool = pool
    store.logger = get_logger("test")
    return store


def _row(**overrides):
    now = utcnow()
    row = {
        "jti": "a",
        "token_hash": "hash-a",
        "user_id": "user-1",
        "family_id": "fam-1",
        "prev_jti": None,
        "replaced_by_jti": None,
        "revoked": False,
        "reason": None,
        "created_at": now,
        "expires_at": now + timedelta(days=7),
    }
    row.update(overrides)
    return row


def test_mark_replaced_only_when_unset():
    conn = DummyConnection([DummyCursor(rowcount=1), DummyCursor(rowcount=0)])
    store = _store(DummyPool(conn))

    assert store.mark_refresh_token_replaced("a", "b") is True
    assert store.mark_refresh_token_replaced("a", "c") is False
    sql, params = conn.executed[0]
    assert "replaced_by_jti IS NULL" in sql
    assert params == ("b", "a")


def test_lookup_by_hash_maps_row():
    conn = DummyConnection([DummyCursor(row=_row(replaced_by_jti="b", revoked=True))])
    store = _store(DummyPool(conn))

    record = store.get_refresh_token_by_hash("hash-a")

    assert isinstance(record, RefreshTokenRecord)
    assert record.replaced_by_jti == "b"
    assert record.revoked is True
    assert conn.executed[0][1] == ("hash-a",)


def test_lookup_miss_returns_none():
    store = _store(DummyPool(DummyConnection([DummyCursor(row=None)])))
    assert store.get_refresh_token_by_hash("nope") is None


def test_duplicate_email_is_constraint_violation():
    conn = DummyConnection([errors.UniqueViolation("duplicate key")])
    store = _store(DummyPool(conn))

    with pytest.raises(ConstraintViolation):
        store.create_user("Alice@Example.com", "$argon2id$stub")


def test_revoke_family_returns_rowcount():
    conn = DummyConnection([DummyCursor(rowcount=3)])
    store = _store(DummyPool(conn))

    assert store.revoke_refresh_family("fam-1", "TOKEN_REUSE_DETECTED") == 3
    assert conn.executed[0][1] == ("TOKEN_REUSE_DETECTED", "fam-1")


@pytest.mark.parametrize(
    "error",
    [PoolTimeout("pool exhausted"), psycopg.OperationalError("connection refused")],
)
def test_backend_errors_are_store_unavailable(error):
    store = _store(DummyPool(error=error))

    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_refresh_token("a")
    assert excinfo.value.backend == "postgres"


def test_unstubbed_pool_is_never_touched_by_pure_helpers():
    store = _store(DummyPool())
    user = store._row_to_user({"id": 7, "email": "a@example.com", "created_at": None})
    assert user.id == "7"
    assert user.created_at is not None
