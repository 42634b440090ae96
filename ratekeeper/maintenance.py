"""Operational maintenance for the bucket table.

Expired buckets are harmless (the next request for the key resets them in
place) but they accumulate for keys that stop sending traffic. The sweep only
deletes rows whose window has fully elapsed, so it can run alongside live
traffic; a concurrent request for a swept key simply recreates its row.

Used by:

- the CLI (`ratekeeper sweep --apply`), e.g. from a cron job
- the admin API (`POST /api/admin/rate-limits/sweep`)
"""

from __future__ import annotations

from .limiter import RateLimiter
from .observability import log_event


def sweep_expired_buckets(limiter: RateLimiter, *, now: int | None = None, apply: bool = False) -> int:
    """Count (dry-run) or delete (apply) buckets whose window ended before `now` (epoch ms)."""
    now_ms = limiter.clock() if now is None else int(now)
    if apply:
        expired = limiter.sweep_expired(now_ms)
    else:
        expired = limiter.store.count_expired(now_ms)

    log_event(
        "rate_limit.sweep",
        mode="apply" if apply else "dry-run",
        now=now_ms,
        expired=expired,
        backend=getattr(limiter.store, "backend", "unknown"),
    )
    return expired
