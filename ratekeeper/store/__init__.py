from .base import (
    AtomicUpsertUnsupported,
    BucketStore,
    RateLimitBucket,
    RateLimitStats,
    StoreUnavailable,
)
from .factory import get_store
from .postgres_adapter import PostgresBucketStore
from .sqlite_adapter import SQLiteBucketStore

__all__ = [
    "AtomicUpsertUnsupported",
    "BucketStore",
    "RateLimitBucket",
    "RateLimitStats",
    "StoreUnavailable",
    "SQLiteBucketStore",
    "PostgresBucketStore",
    "get_store",
]
