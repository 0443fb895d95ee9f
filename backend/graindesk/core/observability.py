"""Request logging, latency tracking and the JSON error handlers.

Log records carry their fields in ``extra``; nothing here logs request or
response bodies.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Deque

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import TimeoutError as SATimeoutError
from starlette.responses import Response

from graindesk.config import settings
from graindesk.core.errors import DomainError

_APP_START_MONOTONIC = time.monotonic()

# Endpoints whose latency percentiles are logged: (method, path suffix, label).
CRITICAL_ENDPOINTS: list[tuple[str, str, str]] = [
    ("POST", "/accept", "bids.accept"),
    ("GET", "/pru", "sales.pru"),
    ("GET", "/pnl/portfolio", "pnl.portfolio"),
    ("GET", "/pnl/clients", "pnl.clients"),
    ("GET", "/resales/market", "resales.market"),
]

_QUIET_PATHS = {"/health", "/healthz"}


def critical_label_for(method: str, path: str) -> str | None:
    for m, suffix, label in CRITICAL_ENDPOINTS:
        if method == m and path.endswith(suffix):
            return label
    return None


def percentile(values: list[float], pct: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    k = int(round((pct / 100.0) * (len(ordered) - 1)))
    return float(ordered[max(0, min(k, len(ordered) - 1))])


class LatencyTracker:
    """Rolling per-endpoint latency window; logs p50/p95/p99 every ``log_every`` samples."""

    def __init__(self, window: int = 200, log_every: int = 50) -> None:
        self.log_every = max(1, int(log_every))
        self._lock = Lock()
        self._buckets: dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=int(window)))

    def record(self, label: str | None, duration_ms: float, logger: logging.Logger) -> None:
        if not label:
            return
        with self._lock:
            bucket = self._buckets[label]
            bucket.append(float(duration_ms))
            if len(bucket) % self.log_every != 0:
                return
            values = list(bucket)
        logger.info(
            "http_latency",
            extra={
                "endpoint": label,
                "p50_ms": round(percentile(values, 50), 2),
                "p95_ms": round(percentile(values, 95), 2),
                "p99_ms": round(percentile(values, 99), 2),
                "window": len(values),
            },
        )


latency = LatencyTracker(
    window=int(os.getenv("LATENCY_METRICS_WINDOW", "200")),
    log_every=int(os.getenv("LATENCY_METRICS_LOG_EVERY", "50")),
)


def uptime_seconds() -> float:
    return max(0.0, time.monotonic() - _APP_START_MONOTONIC)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _pool_status() -> str | None:
    from graindesk.database import engine

    status = getattr(engine.pool, "status", None)
    return status() if callable(status) else None


def _app_logger(request: Request) -> logging.Logger:
    logger = getattr(getattr(request.app, "state", None), "logger", None)
    return logger or logging.getLogger("graindesk")


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or str(uuid.uuid4())


def _request_fields(request: Request, request_id: str, **fields) -> dict:
    return {"request_id": request_id, "method": request.method, "path": request.url.path, **fields}


def _cors_headers(request: Request) -> dict[str, str]:
    # Without these a browser reports an opaque CORS failure instead of the 500.
    origin = request.headers.get("origin")
    allowed = set(settings.cors_origins or [])
    if not origin or not (origin in allowed or "*" in allowed):
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Vary": "Origin",
    }


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Validation and numeric failures are 422, state conflicts 409, NotFound 404."""

    request_id = _request_id(request)
    _app_logger(request).info(
        "domain_error",
        extra=_request_fields(request, request_id, code=exc.code, status_code=exc.status_code),
    )
    body = exc.to_dict()
    body["request_id"] = request_id
    return JSONResponse(
        status_code=exc.status_code, content=body, headers={"X-Request-ID": request_id}
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    _app_logger(request).exception(
        "unhandled_exception",
        extra=_request_fields(request, request_id, exception_type=type(exc).__name__),
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error. Please retry later.",
            "request_id": request_id,
            "code": "INTERNAL_SERVER_ERROR",
        },
        headers={"X-Request-ID": request_id, **_cors_headers(request)},
    )


async def request_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Propagate X-Request-ID and log one line per request with its duration."""

    request_id = _request_id(request)
    logger = _app_logger(request)
    label = critical_label_for(request.method, request.url.path)
    start = time.perf_counter()

    def elapsed_ms() -> float:
        return (time.perf_counter() - start) * 1000.0

    try:
        response: Response = await call_next(request)
    except SATimeoutError as exc:
        duration_ms = elapsed_ms()
        latency.record(label, duration_ms, logger)
        logger.error(
            "db_pool_timeout",
            extra=_request_fields(
                request,
                request_id,
                duration_ms=round(duration_ms, 2),
                pool_status=_pool_status(),
                error=str(exc),
            ),
        )
        raise

    duration_ms = elapsed_ms()
    latency.record(label, duration_ms, logger)

    if duration_ms >= settings.slow_request_ms:
        logger.warning(
            "slow_request",
            extra=_request_fields(
                request, request_id, duration_ms=round(duration_ms, 2), pool_status=_pool_status()
            ),
        )
    if request.url.path not in _QUIET_PATHS:
        logger.info(
            "http_request",
            extra=_request_fields(
                request,
                request_id,
                endpoint=label,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            ),
        )

    response.headers.setdefault("X-Request-ID", request_id)
    return response
