from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .base import (
    AtomicUpsertUnsupported,
    RateLimitBucket,
    RateLimitStats,
    StoreUnavailable,
    bucket_from_row,
    increment_result_from_row,
)

# INSERT ... ON CONFLICT ... RETURNING needs SQLite 3.35+.
_HAS_RETURNING = sqlite3.sqlite_version_info >= (3, 35, 0)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS rate_limit_buckets (
  key TEXT PRIMARY KEY,
  count INTEGER NOT NULL,
  window_start INTEGER NOT NULL,
  window_ms INTEGER NOT NULL
);
"""

_EXPIRY_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_rate_limit_buckets_expires
  ON rate_limit_buckets (window_start + window_ms);
"""

# The CASE branches read the pre-update row, so reset-vs-increment is decided
# inside the same statement that writes it.
_UPSERT_SQL = """
INSERT INTO rate_limit_buckets (key, count, window_start, window_ms)
VALUES (:key, 1, :now, :window_ms)
ON CONFLICT(key) DO UPDATE SET
  count = CASE
    WHEN excluded.window_start > rate_limit_buckets.window_start + rate_limit_buckets.window_ms THEN 1
    ELSE rate_limit_buckets.count + 1
  END,
  window_start = CASE
    WHEN excluded.window_start > rate_limit_buckets.window_start + rate_limit_buckets.window_ms
      THEN excluded.window_start
    ELSE rate_limit_buckets.window_start
  END,
  window_ms = excluded.window_ms
RETURNING count, window_start
"""


@contextmanager
def _store_errors(op: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise StoreUnavailable(f"sqlite {op} failed: {type(e).__name__}: {e}") from e


class SQLiteBucketStore:
    backend = "sqlite"

    def __init__(self, sqlite_path: str, *, busy_timeout_s: float = 5.0) -> None:
        self.sqlite_path = sqlite_path
        self.busy_timeout_s = float(busy_timeout_s)
        Path(Path(sqlite_path).parent).mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        # Autocommit; write paths open their own IMMEDIATE transaction so the
        # busy timeout applies while waiting for the write lock.
        conn = sqlite3.connect(self.sqlite_path, timeout=self.busy_timeout_s, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def init_schema(self) -> None:
        with _store_errors("init_schema"), self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(_SCHEMA_SQL)
            conn.execute(_EXPIRY_INDEX_SQL)

    def upsert_and_increment(self, key: str, now: int, window_ms: int) -> tuple[int, int]:
        if not _HAS_RETURNING:
            raise AtomicUpsertUnsupported(
                f"SQLite {sqlite3.sqlite_version} has no RETURNING clause; 3.35+ is required"
            )
        with _store_errors("upsert_and_increment"), self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                _UPSERT_SQL,
                {"key": key, "now": int(now), "window_ms": int(window_ms)},
            ).fetchone()
            conn.execute("COMMIT")
        return increment_result_from_row(row)

    def peek(self, key: str) -> RateLimitBucket | None:
        with _store_errors("peek"), self._connect() as conn:
            row = conn.execute(
                "SELECT key, count, window_start, window_ms FROM rate_limit_buckets WHERE key=?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return bucket_from_row(row)

    def remove(self, key: str) -> None:
        with _store_errors("remove"), self._connect() as conn:
            conn.execute("DELETE FROM rate_limit_buckets WHERE key=?", (key,))

    def remove_all(self) -> None:
        with _store_errors("remove_all"), self._connect() as conn:
            conn.execute("DELETE FROM rate_limit_buckets")

    def sweep_expired(self, now: int) -> int:
        with _store_errors("sweep_expired"), self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM rate_limit_buckets WHERE window_start + window_ms < ?",
                (int(now),),
            )
            return int(cur.rowcount)

    def count_expired(self, now: int) -> int:
        with _store_errors("count_expired"), self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(1) AS n FROM rate_limit_buckets WHERE window_start + window_ms < ?",
                (int(now),),
            ).fetchone()
        return int(row["n"])

    def stats(self) -> RateLimitStats:
        with _store_errors("stats"), self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(1) AS bucket_count, COALESCE(SUM(count), 0) AS total_requests
                FROM rate_limit_buckets
                """
            ).fetchone()
        return RateLimitStats(bucket_count=int(row["bucket_count"]), total_requests=int(row["total_requests"]))
