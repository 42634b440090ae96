from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping

from .limiter import RateLimiter, RateLimitResult

Endpoint = Literal[
    "login",
    "register",
    "passwordReset",
    "api",
    "search",
    "upload",
    "vote",
    "comment",
    "report",
    "download",
]

_MINUTE_MS = 60_000
_HOUR_MS = 60 * _MINUTE_MS


class UnknownEndpoint(KeyError):
    """Raised for an endpoint that has no entry in RATE_LIMITS (a programming error)."""


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_ms: int


RATE_LIMITS: Mapping[str, RateLimitPolicy] = {
    # Auth endpoints are the strictest.
    "login": RateLimitPolicy(limit=10, window_ms=_MINUTE_MS),
    "register": RateLimitPolicy(limit=5, window_ms=10 * _MINUTE_MS),
    "passwordReset": RateLimitPolicy(limit=3, window_ms=_HOUR_MS),
    "api": RateLimitPolicy(limit=100, window_ms=_MINUTE_MS),
    "search": RateLimitPolicy(limit=30, window_ms=_MINUTE_MS),
    "upload": RateLimitPolicy(limit=10, window_ms=_MINUTE_MS),
    "vote": RateLimitPolicy(limit=60, window_ms=_MINUTE_MS),
    "comment": RateLimitPolicy(limit=20, window_ms=_MINUTE_MS),
    "report": RateLimitPolicy(limit=10, window_ms=_HOUR_MS),
    "download": RateLimitPolicy(limit=100, window_ms=_MINUTE_MS),
}


def policy_for(endpoint: str) -> RateLimitPolicy:
    try:
        return RATE_LIMITS[endpoint]
    except KeyError:
        raise UnknownEndpoint(endpoint) from None


def bucket_key(endpoint: str, client_id: str) -> str:
    return f"{endpoint}:{client_id}"


def apply_rate_limit(limiter: RateLimiter, client_id: str, endpoint: Endpoint) -> RateLimitResult:
    """Consume one request for `client_id` under the named endpoint policy."""
    policy = policy_for(endpoint)
    return limiter.consume(bucket_key(endpoint, client_id), policy.limit, policy.window_ms)


def check_rate_limit(limiter: RateLimiter, client_id: str, endpoint: Endpoint) -> RateLimitResult:
    policy = policy_for(endpoint)
    return limiter.peek_status(bucket_key(endpoint, client_id), policy.limit, policy.window_ms)
