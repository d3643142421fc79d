"""Access log for the revenue API.

One record per request on the ``revenue_api.access`` logger.  The record's
``request`` extra carries the matched route template and the
``connection_id`` path parameter, so every call touching a connection can
be found by id in the JSON log stream.  Credential headers are reported by
name only; their values never reach the log.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("revenue_api.access")

CORRELATION_HEADER = "X-Correlation-ID"

_CREDENTIAL_HEADERS = ("x-api-key", "authorization")


def _route_template(request: Request) -> str:
    """``/api/v1/connections/{connection_id}`` rather than the concrete path, when a route matched."""
    route = request.scope.get("route")
    return getattr(route, "path_format", None) or request.url.path


def _access_fields(request: Request, status_code: int, duration_ms: float, correlation_id: str) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "method": request.method,
        "route": _route_template(request),
        "status_code": status_code,
        "duration_ms": duration_ms,
        "correlation_id": correlation_id,
        "tenant_id": getattr(request.state, "tenant_id", None),
        "credential": next((name for name in _CREDENTIAL_HEADERS if name in request.headers), None),
    }
    # The router fills path_params into the shared scope once a route matched.
    connection_id = request.path_params.get("connection_id")
    if connection_id:
        fields["connection_id"] = connection_id
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one access record per request and echo ``X-Correlation-ID``.

    A caller-supplied correlation id is reused; otherwise a UUID-4 is minted.
    Server errors log at ERROR, client errors at WARNING, the rest at INFO.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            duration_ms = round((time.monotonic() - started) * 1000, 2)
            fields = _access_fields(request, status_code, duration_ms, correlation_id)
            if status_code >= 500:
                level = logging.ERROR
            elif status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(
                level,
                "%s %s -> %d (%.1f ms)",
                request.method,
                fields["route"],
                status_code,
                duration_ms,
                extra={"request": fields},
            )
