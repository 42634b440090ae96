from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol


class StoreUnavailable(Exception):
    """The bucket store could not complete an operation (connection/statement error)."""


class AtomicUpsertUnsupported(StoreUnavailable):
    """The backing engine cannot run the single-statement conditional upsert."""


@dataclass(frozen=True)
class RateLimitBucket:
    key: str
    count: int
    window_start: int  # epoch ms
    window_ms: int

    @property
    def reset_at(self) -> int:
        return self.window_start + self.window_ms

    def is_expired(self, now: int) -> bool:
        """A window is live up to and including `window_start + window_ms`."""
        return now > self.reset_at


@dataclass(frozen=True)
class RateLimitStats:
    bucket_count: int
    total_requests: int


def _as_int(value: Any, column: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise StoreUnavailable(f"rate_limit_buckets.{column} is not an integer: {value!r}")
    return value


def bucket_from_row(row: Mapping[str, Any]) -> RateLimitBucket:
    """Validate a driver row (sqlite3.Row / psycopg dict row) into a RateLimitBucket."""

    try:
        key = row["key"]
        count = _as_int(row["count"], "count")
        window_start = _as_int(row["window_start"], "window_start")
        window_ms = _as_int(row["window_ms"], "window_ms")
    except (KeyError, IndexError) as e:
        raise StoreUnavailable(f"rate_limit_buckets row is missing a column: {e}") from e
    if not isinstance(key, str):
        raise StoreUnavailable(f"rate_limit_buckets.key is not a string: {key!r}")
    if count < 0:
        raise StoreUnavailable(f"rate_limit_buckets.count is negative for key={key!r}")
    return RateLimitBucket(key=key, count=count, window_start=window_start, window_ms=window_ms)


def increment_result_from_row(row: Mapping[str, Any] | None) -> tuple[int, int]:
    if row is None:
        raise StoreUnavailable("atomic upsert returned no row")
    try:
        return _as_int(row["count"], "count"), _as_int(row["window_start"], "window_start")
    except (KeyError, IndexError) as e:
        raise StoreUnavailable(f"atomic upsert row is missing a column: {e}") from e


class BucketStore(Protocol):
    """Durable, atomically-updatable bucket storage shared by all request handlers."""

    backend: str

    def init_schema(self) -> None: ...

    def upsert_and_increment(self, key: str, now: int, window_ms: int) -> tuple[int, int]: ...

    def peek(self, key: str) -> RateLimitBucket | None: ...

    def remove(self, key: str) -> None: ...

    def remove_all(self) -> None: ...

    def sweep_expired(self, now: int) -> int: ...

    def count_expired(self, now: int) -> int: ...

    def stats(self) -> RateLimitStats: ...
