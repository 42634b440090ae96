"""FastAPI integration: a process-wide limiter handle and per-route dependencies.

Route handlers guard an action with::

    @app.post("/api/login", dependencies=[Depends(require_rate_limit("login"))])

The limiter handle is only a client for the shared store; it holds no counters.
"""

from __future__ import annotations

from typing import Callable

from fastapi import HTTPException, Request

from . import config
from .client_id import resolve_request_client_id
from .limiter import RateLimiter, RateLimitResult
from .observability import log_event
from .otel import record_rate_limit_decision_metric
from .policies import Endpoint, apply_rate_limit, policy_for
from .store import StoreUnavailable, get_store

_LIMITER: RateLimiter | None = None


def build_limiter(settings: config.Settings | None = None) -> RateLimiter:
    s = settings or config.settings
    store = get_store(
        sqlite_path=s.sqlite_path,
        database_url=s.database_url,
        busy_timeout_s=s.sqlite_busy_timeout_s,
    )
    store.init_schema()
    return RateLimiter(store, degraded_policy=s.rate_limit_degraded_policy)  # type: ignore[arg-type]


def get_limiter() -> RateLimiter:
    """Return the process limiter, building it (and the schema) on first use."""
    global _LIMITER
    if _LIMITER is None:
        _LIMITER = build_limiter()
    return _LIMITER


def reset_limiter() -> None:
    global _LIMITER
    _LIMITER = None


def require_rate_limit(endpoint: Endpoint) -> Callable[..., RateLimitResult | None]:
    # Resolve now so a typo in a route definition fails at import time.
    policy = policy_for(endpoint)

    def _dep(request: Request) -> RateLimitResult | None:
        if not config.settings.rate_limit_enabled:
            return None

        client_id = resolve_request_client_id(request)
        try:
            limiter = get_limiter()
            result = apply_rate_limit(limiter, client_id, endpoint)
        except StoreUnavailable as e:
            log_event(
                "rate_limit.store_unavailable",
                severity="ERROR",
                endpoint=endpoint,
                error_type=type(e).__name__,
                error=str(e),
            )
            record_rate_limit_decision_metric(endpoint=endpoint, outcome="error")
            raise HTTPException(status_code=503, detail="Rate limiter unavailable") from e

        if result.allowed:
            record_rate_limit_decision_metric(endpoint=endpoint, outcome="allowed")
            return result

        record_rate_limit_decision_metric(endpoint=endpoint, outcome="denied")
        log_event(
            "rate_limit.denied",
            severity="WARNING",
            endpoint=endpoint,
            client_id=client_id,
            retry_after_seconds=result.retry_after_seconds,
            request_id=getattr(request.state, "request_id", None),
        )
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers=result.headers(policy.limit, limiter.clock()),
        )

    return _dep
