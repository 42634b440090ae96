from .client_id import resolve_client_id
from .limiter import Allowed, Denied, RateLimiter, RateLimitResult
from .policies import RATE_LIMITS, RateLimitPolicy, UnknownEndpoint, apply_rate_limit
from .store import (
    AtomicUpsertUnsupported,
    RateLimitBucket,
    RateLimitStats,
    StoreUnavailable,
    get_store,
)

__all__ = [
    "Allowed",
    "AtomicUpsertUnsupported",
    "Denied",
    "RATE_LIMITS",
    "RateLimitBucket",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimitStats",
    "RateLimiter",
    "StoreUnavailable",
    "UnknownEndpoint",
    "apply_rate_limit",
    "get_store",
    "resolve_client_id",
]
