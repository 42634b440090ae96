from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import AdminContext, require_admin
from .client_id import resolve_request_client_id
from .config import settings
from .dependencies import get_limiter, require_rate_limit
from .limiter import RateLimiter
from .maintenance import sweep_expired_buckets
from .observability import Timer, configure_logging, log_event, log_http_request, request_id_from_headers
from .otel import record_http_request_metric, setup_otel
from .policies import RATE_LIMITS, RateLimitPolicy, UnknownEndpoint, bucket_key, policy_for
from .store import StoreUnavailable


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the limiter (and its schema) before serving traffic."""
    get_limiter()
    yield


app = FastAPI(
    title="ratekeeper",
    version=settings.version,
    docs_url="/api/swagger",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

configure_logging()
setup_otel(app)


class ConsumeRequest(BaseModel):
    client_id: str | None = Field(default=None, min_length=1, max_length=256)


@app.middleware("http")
async def _request_middleware(request: Request, call_next):
    """Attach a request ID and emit one structured log line per request."""

    timer = Timer()
    rid = request_id_from_headers({k.lower(): v for k, v in request.headers.items()})
    request.state.request_id = rid
    remote_ip = resolve_request_client_id(request)
    user_agent = request.headers.get("user-agent", "")

    try:
        response = await call_next(request)
    except Exception as e:
        latency_ms = timer.ms()
        record_http_request_metric(method=request.method, path=request.url.path, status_code=500, latency_ms=latency_ms)
        log_http_request(
            request_id=rid,
            method=request.method,
            path=request.url.path,
            status=500,
            latency_ms=latency_ms,
            remote_ip=remote_ip,
            user_agent=user_agent,
            error_type=type(e).__name__,
            severity="ERROR",
        )
        raise

    latency_ms = timer.ms()
    status = int(response.status_code)
    record_http_request_metric(method=request.method, path=request.url.path, status_code=status, latency_ms=latency_ms)
    log_http_request(
        request_id=rid,
        method=request.method,
        path=request.url.path,
        status=status,
        latency_ms=latency_ms,
        remote_ip=remote_ip,
        user_agent=user_agent,
        limited=status == 429,
        severity="ERROR" if status >= 500 else ("WARNING" if status >= 400 else "INFO"),
    )
    response.headers["X-Request-Id"] = rid
    return response


@app.exception_handler(StoreUnavailable)
async def _store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    log_event(
        "rate_limit.store_unavailable",
        severity="ERROR",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
        request_id=getattr(request.state, "request_id", None),
    )
    return JSONResponse(status_code=503, content={"detail": "Rate limiter unavailable"})


def _policy_or_404(endpoint: str) -> RateLimitPolicy:
    try:
        return policy_for(endpoint)
    except UnknownEndpoint:
        raise HTTPException(status_code=404, detail=f"Unknown rate limit endpoint: {endpoint}") from None


def _policy_dict(policy: RateLimitPolicy) -> dict[str, int]:
    return {"limit": policy.limit, "window_ms": policy.window_ms}


@app.get("/health")
def health() -> dict[str, Any]:
    return {"status": "ok", "version": settings.version}


@app.get("/ready")
def ready(limiter: RateLimiter = Depends(get_limiter)) -> JSONResponse:
    try:
        limiter.stats()
    except StoreUnavailable as e:
        log_event("readiness.failed", severity="ERROR", error_type=type(e).__name__, error=str(e))
        return JSONResponse(status_code=503, content={"ready": False})
    return JSONResponse(status_code=200, content={"ready": True})


@app.get("/api/meta")
def meta(limiter: RateLimiter = Depends(get_limiter)) -> dict[str, Any]:
    return {
        "version": settings.version,
        "store_backend": getattr(limiter.store, "backend", "unknown"),
        "rate_limit_enabled": bool(settings.rate_limit_enabled),
        "degraded_policy": limiter.degraded_policy,
        "policies": {name: _policy_dict(p) for name, p in RATE_LIMITS.items()},
    }


@app.post("/api/limits/{endpoint}/consume")
def consume(
    endpoint: str,
    request: Request,
    body: ConsumeRequest | None = None,
    limiter: RateLimiter = Depends(get_limiter),
) -> JSONResponse:
    """Count one request for a client against an endpoint policy.

    Lets edge workers and other services share this limiter over HTTP. The
    client id comes from the body when given, otherwise from proxy headers.
    """

    policy = _policy_or_404(endpoint)
    client_id = (body.client_id if body and body.client_id else None) or resolve_request_client_id(request)
    result = limiter.consume(bucket_key(endpoint, client_id), policy.limit, policy.window_ms)
    payload = {"endpoint": endpoint, "client_id": client_id, **result.to_dict()}
    headers = result.headers(policy.limit, limiter.clock())
    if not result.allowed:
        log_event(
            "rate_limit.denied",
            severity="WARNING",
            endpoint=endpoint,
            client_id=client_id,
            retry_after_seconds=result.retry_after_seconds,
            request_id=getattr(request.state, "request_id", None),
        )
        return JSONResponse(status_code=429, content=payload, headers=headers)
    return JSONResponse(status_code=200, content=payload, headers=headers)


@app.get("/api/limits/{endpoint}/status", dependencies=[Depends(require_rate_limit("api"))])
def status(endpoint: str, request: Request, limiter: RateLimiter = Depends(get_limiter)) -> JSONResponse:
    policy = _policy_or_404(endpoint)
    client_id = resolve_request_client_id(request)
    result = limiter.peek_status(bucket_key(endpoint, client_id), policy.limit, policy.window_ms)
    return JSONResponse(
        status_code=200,
        content={"endpoint": endpoint, "client_id": client_id, **_policy_dict(policy), **result.to_dict()},
    )


@app.get("/api/admin/rate-limits/stats")
def admin_stats(
    _admin: AdminContext = Depends(require_admin),
    limiter: RateLimiter = Depends(get_limiter),
) -> dict[str, int]:
    s = limiter.stats()
    return {"bucket_count": s.bucket_count, "total_requests": s.total_requests}


@app.delete("/api/admin/rate-limits/{key:path}")
def admin_reset_key(
    key: str,
    admin: AdminContext = Depends(require_admin),
    limiter: RateLimiter = Depends(get_limiter),
) -> dict[str, Any]:
    if not key.strip():
        raise HTTPException(status_code=404, detail="Bucket key is required")
    limiter.reset(key)
    log_event("rate_limit.reset", key=key, principal=admin.principal)
    return {"reset": key}


@app.delete("/api/admin/rate-limits")
def admin_clear_all(
    admin: AdminContext = Depends(require_admin),
    limiter: RateLimiter = Depends(get_limiter),
) -> dict[str, Any]:
    limiter.clear_all()
    log_event("rate_limit.clear_all", severity="WARNING", principal=admin.principal)
    return {"cleared": True}


@app.post("/api/admin/rate-limits/sweep")
def admin_sweep(
    apply: bool = True,
    now: int | None = None,
    _admin: AdminContext = Depends(require_admin),
    limiter: RateLimiter = Depends(get_limiter),
) -> dict[str, Any]:
    removed = sweep_expired_buckets(limiter, now=now, apply=apply)
    return {"mode": "apply" if apply else "dry-run", "expired": removed}
