from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from ratekeeper.store import PostgresBucketStore, RateLimitBucket, StoreUnavailable, get_store
from ratekeeper.store.sqlite_adapter import SQLiteBucketStore

T0 = 1_700_000_000_000


class _DriverError(Exception):
    pass


class _FakeCursor:
    def __init__(self, conn: "_FakeConn") -> None:
        self._conn = conn
        self._row = None
        self.rowcount = -1

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: ANN001
        return False

    def execute(self, sql: str, params=None) -> None:
        db = self._conn.db
        db.statements.append((" ".join(sql.split()), params))
        if db.fail:
            raise _DriverError("server closed the connection unexpectedly")
        self._row = db.rows.pop(0) if db.rows else None
        self.rowcount = db.rowcount

    def fetchone(self):
        return self._row


class _FakeConn:
    def __init__(self, db: "_FakeDb") -> None:
        self.db = db

    def __enter__(self) -> "_FakeConn":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: ANN001
        return False

    def cursor(self) -> _FakeCursor:
        return _FakeCursor(self)

    def commit(self) -> None:
        self.db.commits += 1


class _FakeDb:
    def __init__(self) -> None:
        self.statements: list[tuple[str, object]] = []
        self.rows: list[dict[str, object]] = []
        self.rowcount = 0
        self.commits = 0
        self.fail = False
        self.connect_kwargs: list[dict[str, object]] = []

    def driver(self) -> SimpleNamespace:
        def _connect(url: str, **kwargs):
            self.connect_kwargs.append({"url": url, **kwargs})
            if self.fail:
                raise _DriverError("connection refused")
            return _FakeConn(self)

        return SimpleNamespace(connect=_connect, Error=_DriverError, rows=SimpleNamespace(dict_row="dict_row"))


@pytest.fixture
def db() -> _FakeDb:
    return _FakeDb()


@pytest.fixture
def pg_store(db) -> PostgresBucketStore:
    return PostgresBucketStore("postgresql://u:p@db/ratekeeper", driver=db.driver())


def test_upsert_is_a_single_conditional_statement(db, pg_store):
    db.rows = [{"count": 4, "window_start": T0}]

    assert pg_store.upsert_and_increment("login:1.2.3.4", T0 + 5, 60_000) == (4, T0)

    assert len(db.statements) == 1
    sql, params = db.statements[0]
    assert sql.startswith("INSERT INTO rate_limit_buckets")
    assert "ON CONFLICT (key) DO UPDATE SET" in sql
    assert "CASE" in sql
    assert sql.endswith("RETURNING count, window_start")
    assert params == {"key": "login:1.2.3.4", "now": T0 + 5, "window_ms": 60_000}
    assert db.commits == 1
    assert db.connect_kwargs[0]["row_factory"] == "dict_row"


def test_peek_validates_rows(db, pg_store):
    db.rows = [{"key": "k", "count": 2, "window_start": T0, "window_ms": 60_000}]
    assert pg_store.peek("k") == RateLimitBucket(key="k", count=2, window_start=T0, window_ms=60_000)

    assert pg_store.peek("missing") is None

    db.rows = [{"key": "k", "count": "2", "window_start": T0, "window_ms": 60_000}]
    with pytest.raises(StoreUnavailable):
        pg_store.peek("k")


def test_sweep_reports_deleted_rows(db, pg_store):
    db.rowcount = 3
    assert pg_store.sweep_expired(T0) == 3
    sql, params = db.statements[0]
    assert sql == "DELETE FROM rate_limit_buckets WHERE window_start + window_ms < %s"
    assert params == (T0,)


def test_stats_accepts_numeric_sum(db, pg_store):
    db.rows = [{"bucket_count": 2, "total_requests": Decimal("7")}]
    stats = pg_store.stats()
    assert (stats.bucket_count, stats.total_requests) == (2, 7)


def test_driver_errors_become_store_unavailable(db, pg_store):
    db.fail = True
    with pytest.raises(StoreUnavailable) as excinfo:
        pg_store.upsert_and_increment("k", T0, 60_000)
    assert isinstance(excinfo.value.__cause__, _DriverError)

    with pytest.raises(StoreUnavailable):
        pg_store.remove("k")


def test_factory_picks_backend_from_database_url(tmp_path):
    pg = get_store(sqlite_path=str(tmp_path / "x.sqlite"), database_url="postgresql://db/ratekeeper")
    assert isinstance(pg, PostgresBucketStore)

    lite = get_store(sqlite_path=str(tmp_path / "x.sqlite"), database_url=None)
    assert isinstance(lite, SQLiteBucketStore)
