from __future__ import annotations

from .base import BucketStore
from .postgres_adapter import PostgresBucketStore
from .sqlite_adapter import SQLiteBucketStore


def get_store(*, sqlite_path: str, database_url: str | None, busy_timeout_s: float = 5.0) -> BucketStore:
    if database_url and database_url.startswith("postgres"):
        return PostgresBucketStore(database_url)
    return SQLiteBucketStore(sqlite_path, busy_timeout_s=busy_timeout_s)
