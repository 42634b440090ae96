"""Fixed-window rate limiter backed by a shared bucket store.

Each `consume` is exactly one atomic store call; there is no read-modify-write
and no retry loop. Denial is an ordinary result (`Denied`), never an
exception. Store failures surface as `StoreUnavailable` unless an operator
configured a degraded policy, in which case the decision is logged at WARNING.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal, Union

from .observability import Timer, log_event
from .otel import record_store_latency_metric, span
from .store.base import BucketStore, RateLimitStats, StoreUnavailable

DegradedPolicy = Literal["raise", "allow", "deny"]

Clock = Callable[[], int]


def epoch_ms() -> int:
    return int(time.time() * 1000)


def seconds_until(reset_at: int, now: int) -> int:
    """Delta seconds for the `RateLimit-Reset` header; 0 once the window has ended."""
    return max(0, math.ceil((reset_at - now) / 1000))


def retry_after_seconds(reset_at: int, now: int) -> int:
    return max(1, math.ceil((reset_at - now) / 1000))


@dataclass(frozen=True)
class Allowed:
    remaining: int
    reset_at: int  # epoch ms

    allowed = True
    retry_after_seconds = None

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": True, "remaining": self.remaining, "reset_at": self.reset_at}

    def headers(self, limit: int, now: int) -> dict[str, str]:
        return {
            "RateLimit-Limit": str(limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(seconds_until(self.reset_at, now)),
        }


@dataclass(frozen=True)
class Denied:
    reset_at: int  # epoch ms
    retry_after_seconds: int

    allowed = False
    remaining = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": False,
            "remaining": 0,
            "reset_at": self.reset_at,
            "retry_after_seconds": self.retry_after_seconds,
        }

    def headers(self, limit: int, now: int) -> dict[str, str]:
        return {
            "RateLimit-Limit": str(limit),
            "RateLimit-Remaining": "0",
            "RateLimit-Reset": str(seconds_until(self.reset_at, now)),
            "Retry-After": str(self.retry_after_seconds),
        }


RateLimitResult = Union[Allowed, Denied]


def _validate(limit: int, window_ms: int) -> None:
    if int(limit) < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")
    if int(window_ms) < 1:
        raise ValueError(f"window_ms must be >= 1, got {window_ms}")


class RateLimiter:
    def __init__(
        self,
        store: BucketStore,
        *,
        clock: Clock | None = None,
        degraded_policy: DegradedPolicy = "raise",
    ) -> None:
        if degraded_policy not in ("raise", "allow", "deny"):
            raise ValueError(f"unknown degraded policy: {degraded_policy!r}")
        self.store = store
        self.clock: Clock = clock or epoch_ms
        self.degraded_policy: DegradedPolicy = degraded_policy

    def consume(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        """Count one request against `key` and decide whether it may proceed."""
        _validate(limit, window_ms)
        now = self.clock()
        timer = Timer()
        try:
            with span("ratelimit.consume", {"ratelimit.key": key, "ratelimit.limit": int(limit)}):
                count, window_start = self.store.upsert_and_increment(key, now, int(window_ms))
        except StoreUnavailable as e:
            return self._degraded("consume", key, limit, window_ms, now, e)
        finally:
            record_store_latency_metric(latency_ms=timer.ms(), backend=getattr(self.store, "backend", "unknown"))

        reset_at = window_start + int(window_ms)
        if count <= limit:
            return Allowed(remaining=max(0, limit - count), reset_at=reset_at)
        return Denied(reset_at=reset_at, retry_after_seconds=retry_after_seconds(reset_at, now))

    def peek_status(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        """Report what the next `consume` would see, without counting anything."""
        _validate(limit, window_ms)
        now = self.clock()
        try:
            bucket = self.store.peek(key)
        except StoreUnavailable as e:
            return self._degraded("peek_status", key, limit, window_ms, now, e)

        if bucket is None or bucket.is_expired(now):
            return Allowed(remaining=limit, reset_at=now + int(window_ms))

        reset_at = bucket.reset_at
        if bucket.count < limit:
            return Allowed(remaining=limit - bucket.count, reset_at=reset_at)
        return Denied(reset_at=reset_at, retry_after_seconds=retry_after_seconds(reset_at, now))

    def reset(self, key: str) -> None:
        self.store.remove(key)

    def clear_all(self) -> None:
        self.store.remove_all()

    def stats(self) -> RateLimitStats:
        return self.store.stats()

    def sweep_expired(self, now: int | None = None) -> int:
        return self.store.sweep_expired(self.clock() if now is None else int(now))

    def _degraded(
        self,
        op: str,
        key: str,
        limit: int,
        window_ms: int,
        now: int,
        error: StoreUnavailable,
    ) -> RateLimitResult:
        if self.degraded_policy == "raise":
            raise error

        log_event(
            "rate_limit.degraded",
            severity="WARNING",
            op=op,
            key=key,
            policy=self.degraded_policy,
            error_type=type(error).__name__,
            error=str(error),
        )
        reset_at = now + int(window_ms)
        if self.degraded_policy == "allow":
            # peek_status counts nothing.
            spent = 0 if op == "peek_status" else 1
            return Allowed(remaining=max(0, limit - spent), reset_at=reset_at)
        return Denied(reset_at=reset_at, retry_after_seconds=retry_after_seconds(reset_at, now))
