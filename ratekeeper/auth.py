from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from fastapi import HTTPException, Request

from . import config


@dataclass(frozen=True)
class AdminContext:
    principal: str
    authenticated: bool


@dataclass(frozen=True)
class AuthError(Exception):
    status_code: int
    detail: str


def _mask_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return "***"
    digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:8]
    return f"{api_key[:4]}...{digest}"


def _matches_any(candidate: str, keys: tuple[str, ...]) -> bool:
    found = False
    for k in keys:
        # Compare against every key so timing doesn't reveal which one matched.
        if hmac.compare_digest(candidate.encode("utf-8"), k.encode("utf-8")):
            found = True
    return found


def resolve_admin_context(request: Request) -> AdminContext:
    """Admin endpoints are open when ADMIN_API_KEYS is unset (local development)."""
    keys = config.settings.admin_api_keys
    if not keys:
        return AdminContext(principal="anonymous", authenticated=False)

    key = (request.headers.get("x-api-key") or "").strip()
    if not key:
        raise AuthError(status_code=401, detail="Missing API key")
    if not _matches_any(key, keys):
        raise AuthError(status_code=401, detail="Invalid API key")
    return AdminContext(principal=f"api_key:{_mask_key(key)}", authenticated=True)


def require_admin(request: Request) -> AdminContext:
    try:
        return resolve_admin_context(request)
    except AuthError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail) from e
