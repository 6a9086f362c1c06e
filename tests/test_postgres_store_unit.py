import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import OperationalError
from psycopg_pool import PoolTimeout

from addisverify.logging import get_logger
from addisverify.storage.errors import StoreUnavailable
from addisverify.storage.models import AccountStatus
from addisverify.storage.postgres import _UPSERT_WATERMARK_SQL, PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, rows):
        self.rows = list(rows)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))
        return FakeCursor(self.rows.pop(0) if self.rows else None)


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextmanager
    def connection(self, timeout=None):
        if self.error is not None:
            raise self.error
        yield self.conn


def _row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "phone": "+251911223344",
        "status": "active",
        "session_watermark": NOW,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _make_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.logger = get_logger(__name__)
    store.pool_timeout = 1.0
    store.pool = pool
    return store


def test_upsert_uses_single_atomic_statement():
    conn = FakeConnection([_row()])
    store = _make_store(FakePool(conn))

    account = store.upsert_account_watermark("+251911223344", NOW)

    assert account.phone == "+251911223344"
    assert account.session_watermark == NOW
    assert conn.executed == [(_UPSERT_WATERMARK_SQL, ("+251911223344", NOW))]
    assert "ON CONFLICT (phone)" in _UPSERT_WATERMARK_SQL
    assert "interval '1 microsecond'" in _UPSERT_WATERMARK_SQL


def test_row_mapping_converts_uuid_and_status():
    account_id = uuid.uuid4()
    conn = FakeConnection([_row(id=account_id, status="suspended")])
    store = _make_store(FakePool(conn))

    account = store.get_account_by_id(str(account_id))

    assert account.id == str(account_id)
    assert account.status == AccountStatus.SUSPENDED
    assert account.is_blocked


def test_lookup_missing_account_returns_none():
    store = _make_store(FakePool(FakeConnection([None])))
    assert store.get_account_by_phone("+251900000000") is None


def test_non_uuid_ids_skip_the_database():
    conn = FakeConnection([])
    store = _make_store(FakePool(conn))

    assert store.get_account_by_id("not-a-uuid") is None
    assert store.update_status("not-a-uuid", "suspended") is None
    assert conn.executed == []


def test_update_status_writes_enum_value():
    account_id = str(uuid.uuid4())
    conn = FakeConnection([_row(id=account_id, status="deleted")])
    store = _make_store(FakePool(conn))

    account = store.update_status(account_id, AccountStatus.DELETED)

    assert account.status == AccountStatus.DELETED
    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE accounts SET status")
    assert params == ("deleted", account_id)


@pytest.mark.parametrize(
    "error", [OperationalError("server closed the connection"), PoolTimeout("pool exhausted")]
)
def test_connection_failures_become_store_unavailable(error):
    store = _make_store(FakePool(error=error))
    with pytest.raises(StoreUnavailable) as exc_info:
        store.get_account_by_phone("+251911223344")
    assert exc_info.value.detail == {"error_type": type(error).__name__}


def test_missing_table_is_reported():
    store = _make_store(FakePool(FakeConnection([{"oid": None}])))
    with pytest.raises(RuntimeError, match="accounts"):
        store._verify_required_schema()
