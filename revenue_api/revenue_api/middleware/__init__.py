"""Middleware components for the revenue API."""

from __future__ import annotations

from revenue_api.middleware.json_formatter import JSONFormatter
from revenue_api.middleware.logging import RequestLoggingMiddleware
from revenue_api.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "JSONFormatter",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
]
