from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Mapping, Optional

from . import config

LOGGER_NAME = "ratekeeper"


def configure_logging() -> None:
    """Send the `ratekeeper` logger to stderr as one JSON object per line.

    The logger does not propagate, so Uvicorn's own logging config leaves
    it alone. Calling this again replaces the handler instead of adding one.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.getLevelNamesMapping().get(config.settings.log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False


def request_id_from_headers(headers: Mapping[str, str]) -> str:
    """Reuse an upstream X-Request-Id / X-Correlation-Id, or mint a UUID4."""

    rid = headers.get("x-request-id") or headers.get("x-correlation-id")
    return (rid.strip() if rid else "") or str(uuid.uuid4())


def _emit(severity: str, payload: dict[str, Any]) -> None:
    level = logging.getLevelNamesMapping().get(severity, logging.INFO)
    body = {"severity": severity, **{k: v for k, v in payload.items() if v is not None}}
    logging.getLogger(LOGGER_NAME).log(level, json.dumps(body, ensure_ascii=False, default=str))


def log_event(event: str, *, severity: str = "INFO", **fields: Any) -> None:
    """Emit a structured, non-HTTP event (e.g. `rate_limit.denied`)."""
    _emit(severity, {"event": event, **fields})


def log_http_request(
    *,
    request_id: str,
    method: str,
    path: str,
    status: int,
    latency_ms: float,
    remote_ip: str,
    user_agent: str,
    limited: bool = False,
    error_type: Optional[str] = None,
    severity: str = "INFO",
) -> None:
    _emit(
        severity,
        {
            "event": "http_request",
            "service": LOGGER_NAME,
            "request_id": request_id,
            "method": method,
            "path": path,
            "status": status,
            "latency_ms": round(latency_ms, 2),
            "remote_ip": remote_ip,
            "user_agent": user_agent,
            "limited": limited,
            "error_type": error_type,
        },
    )


class Timer:
    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    def ms(self) -> float:
        return (time.perf_counter() - self._t0) * 1000.0
