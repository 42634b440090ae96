from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .version import get_version

# Load a local .env for developer convenience.
# - Does NOT override already-set environment variables (CI/deployments win)
# - If .env doesn't exist, no-op
_REPO_ROOT = Path(__file__).resolve().parents[1]
_ENV_PATH = _REPO_ROOT / ".env"
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH, override=False)


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() != "" else default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v.strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(p.strip() for p in raw.split(",") if p.strip())


_ALLOWED_DEGRADED_POLICIES = {"raise", "allow", "deny"}
_ALLOWED_TRACE_EXPORTERS = {"auto", "otlp", "none"}


@dataclass(frozen=True)
class Settings:
    """Central configuration for the rate limiter and its service.

    Everything is read from environment variables once at import time.
    Tests reload this module after changing the environment.
    """

    # ---- Build / runtime ----
    version: str

    # ---- Storage ----
    sqlite_path: str
    database_url: str | None
    sqlite_busy_timeout_s: float

    # ---- Rate limiting ----
    rate_limit_enabled: bool
    # What to do when the bucket store is unreachable: raise | allow | deny.
    # Anything other than "raise" is a degraded mode and is logged as such.
    rate_limit_degraded_policy: str

    # ---- Admin API ----
    admin_api_keys: tuple[str, ...]

    # ---- Logging ----
    log_level: str

    # ---- OpenTelemetry ----
    otel_enabled: bool
    otel_exporter_otlp_endpoint: str | None
    otel_traces_exporter: str
    otel_service_name: str


def load_settings() -> Settings:
    sqlite_path = _env_str("SQLITE_PATH", "data/ratekeeper.sqlite")
    database_url = os.getenv("DATABASE_URL") or None
    sqlite_busy_timeout_s = max(0.0, _env_float("SQLITE_BUSY_TIMEOUT_S", 5.0))

    rate_limit_enabled = _env_bool("RATE_LIMIT_ENABLED", True)
    degraded_policy = _env_str("RATE_LIMIT_DEGRADED_POLICY", "raise").lower().strip()
    if degraded_policy not in _ALLOWED_DEGRADED_POLICIES:
        degraded_policy = "raise"

    otel_traces_exporter = _env_str("OTEL_TRACES_EXPORTER", "auto").lower().strip()
    if otel_traces_exporter not in _ALLOWED_TRACE_EXPORTERS:
        otel_traces_exporter = "auto"

    return Settings(
        version=_env_str("APP_VERSION", get_version()),
        sqlite_path=sqlite_path,
        database_url=database_url,
        sqlite_busy_timeout_s=sqlite_busy_timeout_s,
        rate_limit_enabled=rate_limit_enabled,
        rate_limit_degraded_policy=degraded_policy,
        admin_api_keys=_env_csv("ADMIN_API_KEYS"),
        log_level=_env_str("LOG_LEVEL", "INFO").upper().strip(),
        otel_enabled=_env_bool("OTEL_ENABLED", False),
        otel_exporter_otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
        otel_traces_exporter=otel_traces_exporter,
        otel_service_name=_env_str("OTEL_SERVICE_NAME", "ratekeeper"),
    )


settings = load_settings()
