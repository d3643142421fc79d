"""Prometheus metrics for HTTP requests and sync runs.

Exposes RED metrics (Rate, Errors, Duration) for every HTTP request plus
per-provider sync counters and durations.  Path normalisation collapses
path parameters (e.g. ``/connections/9f1c...`` -> ``/connections/{id}``)
to prevent unbounded label cardinality.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from revenue_engine.models import SyncResult

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "revenue_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "revenue_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

SYNC_RUNS_TOTAL = Counter(
    "revenue_sync_runs_total",
    "Connection sync attempts by provider and outcome",
    ["provider", "status"],
)

SYNC_DURATION = Histogram(
    "revenue_sync_duration_seconds",
    "Duration of one connection sync in seconds",
    ["provider"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)


def record_sync_result(provider: str, result: SyncResult, duration: float) -> None:
    """Orchestrator hook: count the attempt and observe its duration."""
    SYNC_RUNS_TOTAL.labels(provider=provider, status=result.status.value).inc()
    SYNC_DURATION.labels(provider=provider).observe(duration)


# ---------------------------------------------------------------------------
# Path normalisation: collapse UUIDs, hex IDs, and numeric segments
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    # UUIDs (8-4-4-4-12 hex format)
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Long hex strings (connection and key ids)
    (re.compile(r"/[0-9a-f]{12,64}"), "/{id}"),
    # Pure numeric segments
    (re.compile(r"/\d+"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency as Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()

        HTTP_REQUEST_DURATION.labels(
            method=method,
            path=normalised,
        ).observe(duration)

        return response
