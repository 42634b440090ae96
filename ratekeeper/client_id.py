"""Best-effort client identification for rate-limit keys.

Precedence: `cf-connecting-ip` > first `x-forwarded-for` hop > `x-real-ip` > "unknown".

`cf-connecting-ip` is set by the trusted edge. `x-forwarded-for` and
`x-real-ip` are client-controllable unless a trusted proxy rewrites them, so a
deployment without a trusted edge should not rely on IP keys alone for abuse
resistance.
"""

from __future__ import annotations

from typing import Any, Mapping

UNKNOWN_CLIENT = "unknown"


def _lower(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in headers.items()}


def resolve_client_id(headers: Mapping[str, str]) -> str:
    h = _lower(headers)

    cf_ip = (h.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip

    forwarded = h.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = (h.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip

    return UNKNOWN_CLIENT


def resolve_request_client_id(request: Any) -> str:
    """Like `resolve_client_id`, but falls back to the socket peer of a FastAPI request."""
    client_id = resolve_client_id(request.headers)
    if client_id != UNKNOWN_CLIENT:
        return client_id
    client = getattr(request, "client", None)
    host = getattr(client, "host", None) if client else None
    return host or UNKNOWN_CLIENT
