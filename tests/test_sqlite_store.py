from __future__ import annotations

import sqlite3

import pytest

from ratekeeper.store import AtomicUpsertUnsupported, RateLimitBucket, SQLiteBucketStore, StoreUnavailable
from ratekeeper.store import sqlite_adapter

T0 = 1_700_000_000_000


def test_first_request_creates_bucket(store):
    assert store.peek("login:1.2.3.4") is None

    assert store.upsert_and_increment("login:1.2.3.4", T0, 60_000) == (1, T0)

    assert store.peek("login:1.2.3.4") == RateLimitBucket(
        key="login:1.2.3.4", count=1, window_start=T0, window_ms=60_000
    )


def test_increment_within_window_keeps_start_and_updates_window_ms(store):
    store.upsert_and_increment("k", T0, 60_000)
    assert store.upsert_and_increment("k", T0 + 10, 60_000) == (2, T0)
    assert store.upsert_and_increment("k", T0 + 20, 30_000) == (3, T0)

    bucket = store.peek("k")
    assert bucket is not None
    assert bucket.count == 3
    assert bucket.window_start == T0
    assert bucket.window_ms == 30_000


def test_window_boundary_still_counts_then_resets(store):
    store.upsert_and_increment("k", T0, 1_000)

    # now == window_start + window_ms is still inside the window.
    assert store.upsert_and_increment("k", T0 + 1_000, 1_000) == (2, T0)

    # One millisecond later the stored window has elapsed.
    assert store.upsert_and_increment("k", T0 + 1_001, 5_000) == (1, T0 + 1_001)
    bucket = store.peek("k")
    assert bucket is not None
    assert (bucket.count, bucket.window_start, bucket.window_ms) == (1, T0 + 1_001, 5_000)


def test_expiry_uses_the_stored_window(store):
    store.upsert_and_increment("k", T0, 10_000)
    # A shorter window supplied later does not retroactively expire the live one.
    assert store.upsert_and_increment("k", T0 + 5_000, 1_000) == (2, T0)


def test_peek_returns_expired_rows_untouched(store):
    store.upsert_and_increment("k", T0, 1_000)
    store.upsert_and_increment("k", T0 + 1, 1_000)

    bucket = store.peek("k")
    assert bucket is not None
    assert bucket.count == 2
    assert bucket.is_expired(T0 + 5_000)
    assert store.peek("k") == bucket


def test_remove_and_remove_all(store):
    store.upsert_and_increment("a", T0, 60_000)
    store.upsert_and_increment("b", T0, 60_000)

    store.remove("a")
    store.remove("does-not-exist")
    assert store.peek("a") is None
    assert store.peek("b") is not None

    store.remove_all()
    assert store.stats().bucket_count == 0


def test_sweep_expired_removes_only_elapsed_windows(store):
    store.upsert_and_increment("old", T0, 1_000)
    store.upsert_and_increment("live", T0, 60_000)

    now = T0 + 2_000
    assert store.count_expired(now) == 1
    assert store.sweep_expired(now) == 1

    assert store.peek("old") is None
    live = store.peek("live")
    assert live is not None and live.count == 1
    assert store.sweep_expired(now) == 0


def test_sweep_keeps_bucket_whose_window_ends_exactly_now(store):
    store.upsert_and_increment("k", T0, 1_000)
    assert store.sweep_expired(T0 + 1_000) == 0
    assert store.sweep_expired(T0 + 1_001) == 1


def test_stats_counts_buckets_and_requests(store):
    store.upsert_and_increment("key1", T0, 60_000)
    store.upsert_and_increment("key1", T0, 60_000)
    store.upsert_and_increment("key2", T0, 60_000)

    stats = store.stats()
    assert stats.bucket_count == 2
    assert stats.total_requests == 3


def test_init_schema_is_idempotent(store):
    store.upsert_and_increment("k", T0, 60_000)
    store.init_schema()
    assert store.peek("k") is not None


def test_malformed_row_is_rejected_at_the_boundary(store):
    with sqlite3.connect(store.sqlite_path) as conn:
        conn.execute(
            "INSERT INTO rate_limit_buckets (key, count, window_start, window_ms) VALUES (?, ?, ?, ?)",
            ("bad", -3, T0, 60_000),
        )
    with pytest.raises(StoreUnavailable):
        store.peek("bad")


def test_unreachable_database_raises_store_unavailable(tmp_path):
    # A directory cannot be opened as a database file.
    broken = SQLiteBucketStore(str(tmp_path))
    with pytest.raises(StoreUnavailable):
        broken.upsert_and_increment("k", T0, 60_000)
    with pytest.raises(StoreUnavailable):
        broken.peek("k")


def test_missing_table_raises_store_unavailable(tmp_path):
    fresh = SQLiteBucketStore(str(tmp_path / "no_schema.sqlite"))
    with pytest.raises(StoreUnavailable) as excinfo:
        fresh.upsert_and_increment("k", T0, 60_000)
    assert isinstance(excinfo.value.__cause__, sqlite3.Error)


def test_old_sqlite_refuses_instead_of_emulating(store, monkeypatch):
    monkeypatch.setattr(sqlite_adapter, "_HAS_RETURNING", False)
    with pytest.raises(AtomicUpsertUnsupported):
        store.upsert_and_increment("k", T0, 60_000)
    assert store.peek("k") is None
