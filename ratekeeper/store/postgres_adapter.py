from __future__ import annotations

from contextlib import contextmanager
from importlib import import_module
from typing import Any, Iterator

from ..migrations_runner import apply_postgres_migrations
from .base import (
    RateLimitBucket,
    RateLimitStats,
    StoreUnavailable,
    bucket_from_row,
    increment_result_from_row,
)

_UPSERT_SQL = """
INSERT INTO rate_limit_buckets (key, count, window_start, window_ms)
VALUES (%(key)s, 1, %(now)s, %(window_ms)s)
ON CONFLICT (key) DO UPDATE SET
  count = CASE
    WHEN EXCLUDED.window_start > rate_limit_buckets.window_start + rate_limit_buckets.window_ms THEN 1
    ELSE rate_limit_buckets.count + 1
  END,
  window_start = CASE
    WHEN EXCLUDED.window_start > rate_limit_buckets.window_start + rate_limit_buckets.window_ms
      THEN EXCLUDED.window_start
    ELSE rate_limit_buckets.window_start
  END,
  window_ms = EXCLUDED.window_ms
RETURNING count, window_start
"""


class PostgresBucketStore:
    backend = "postgres"

    def __init__(self, database_url: str, *, driver: Any = None) -> None:
        self.database_url = database_url
        self._driver = driver

    def _psycopg(self) -> Any:
        if self._driver is not None:
            return self._driver
        try:
            psycopg = import_module("psycopg")
            import_module("psycopg.rows")
        except Exception as e:  # pragma: no cover
            raise RuntimeError("PostgresBucketStore requires psycopg. Install with `pip install ratekeeper[postgres]`.") from e
        self._driver = psycopg
        return psycopg

    @contextmanager
    def _connect(self, op: str) -> Iterator[Any]:
        psycopg = self._psycopg()
        try:
            with psycopg.connect(self.database_url, row_factory=psycopg.rows.dict_row) as conn:
                yield conn
        except psycopg.Error as e:
            raise StoreUnavailable(f"postgres {op} failed: {type(e).__name__}: {e}") from e

    def init_schema(self) -> None:
        with self._connect("init_schema") as conn:
            apply_postgres_migrations(conn)

    def upsert_and_increment(self, key: str, now: int, window_ms: int) -> tuple[int, int]:
        with self._connect("upsert_and_increment") as conn:
            with conn.cursor() as cur:
                cur.execute(_UPSERT_SQL, {"key": key, "now": int(now), "window_ms": int(window_ms)})
                row = cur.fetchone()
            conn.commit()
        return increment_result_from_row(row)

    def peek(self, key: str) -> RateLimitBucket | None:
        with self._connect("peek") as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT key, count, window_start, window_ms FROM rate_limit_buckets WHERE key = %s",
                    (key,),
                )
                row = cur.fetchone()
        if row is None:
            return None
        return bucket_from_row(row)

    def remove(self, key: str) -> None:
        with self._connect("remove") as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM rate_limit_buckets WHERE key = %s", (key,))
            conn.commit()

    def remove_all(self) -> None:
        with self._connect("remove_all") as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM rate_limit_buckets")
            conn.commit()

    def sweep_expired(self, now: int) -> int:
        with self._connect("sweep_expired") as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM rate_limit_buckets WHERE window_start + window_ms < %s",
                    (int(now),),
                )
                removed = int(cur.rowcount)
            conn.commit()
        return removed

    def count_expired(self, now: int) -> int:
        with self._connect("count_expired") as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(1) AS n FROM rate_limit_buckets WHERE window_start + window_ms < %s",
                    (int(now),),
                )
                row = cur.fetchone()
        return int(row["n"])

    def stats(self) -> RateLimitStats:
        with self._connect("stats") as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT COUNT(1) AS bucket_count, COALESCE(SUM(count), 0) AS total_requests
                    FROM rate_limit_buckets
                    """
                )
                row = cur.fetchone()
        return RateLimitStats(bucket_count=int(row["bucket_count"]), total_requests=int(row["total_requests"]))
