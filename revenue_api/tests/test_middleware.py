"""Tests for request logging, JSON log formatting and Prometheus metrics."""

from __future__ import annotations

import json
import logging
import sys

import pytest
from httpx import AsyncClient
from prometheus_client import REGISTRY

from revenue_api.middleware.json_formatter import JSONFormatter
from revenue_api.middleware.prometheus import _normalise_path, record_sync_result
from revenue_engine.models import SyncResult, SyncStatus


class TestNormalisePath:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/api/v1/connections/9f1c2a7e5b3d4c6f8a0b1c2d3e4f5a6b", "/api/v1/connections/{id}"),
            ("/api/v1/connections/9f1c2a7e5b3d4c6f8a0b1c2d3e4f5a6b/sync", "/api/v1/connections/{id}/sync"),
            ("/api/v1/api-keys/123e4567-e89b-12d3-a456-426614174000", "/api/v1/api-keys/{id}"),
            ("/api/v1/items/42", "/api/v1/items/{id}"),
            ("/api/v1/revenue/signed", "/api/v1/revenue/signed"),
        ],
    )
    def test_collapses_identifiers(self, path: str, expected: str) -> None:
        assert _normalise_path(path) == expected


class TestPrometheus:
    def test_sync_result_recorded(self) -> None:
        labels = {"provider": "paddle", "status": "error"}
        before = REGISTRY.get_sample_value("revenue_sync_runs_total", labels) or 0.0

        record_sync_result("paddle", SyncResult(connection_id="c", status=SyncStatus.ERROR, error="x"), 0.25)

        assert REGISTRY.get_sample_value("revenue_sync_runs_total", labels) == before + 1

    @pytest.mark.asyncio
    async def test_requests_counted_and_exposed(self, client: AsyncClient) -> None:
        await client.get("/api/v1/health")
        resp = await client.get("/metrics")

        assert resp.status_code == 200
        assert 'revenue_http_requests_total{method="GET",path="/api/v1/health",status_code="200"}' in resp.text


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "abc-123"})
        assert resp.headers["X-Correlation-ID"] == "abc-123"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health")
        assert len(resp.headers["X-Correlation-ID"]) == 36

    @pytest.mark.asyncio
    async def test_credentials_named_not_logged(
        self, client: AsyncClient, auth_headers: dict, api_key: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="revenue_api.access"):
            await client.get("/api/v1/connections", headers=auth_headers)

        [record] = [r for r in caplog.records if r.name == "revenue_api.access"]
        assert record.request["credential"] == "x-api-key"
        assert record.request["status_code"] == 200
        assert api_key not in json.dumps(record.request, default=str)

    @pytest.mark.asyncio
    async def test_connection_id_in_access_record(
        self, client: AsyncClient, auth_headers: dict, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="revenue_api.access"):
            resp = await client.get("/api/v1/connections/0123456789abcdef/sync-logs", headers=auth_headers)

        [record] = [r for r in caplog.records if r.name == "revenue_api.access"]
        assert resp.status_code == 404
        assert record.levelno == logging.WARNING
        assert record.request["connection_id"] == "0123456789abcdef"
        assert record.request["route"] == "/api/v1/connections/{connection_id}/sync-logs"
        assert record.getMessage().startswith("GET /api/v1/connections/{connection_id}/sync-logs -> 404")

    @pytest.mark.asyncio
    async def test_routes_without_connection_omit_it(
        self, client: AsyncClient, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="revenue_api.access"):
            await client.get("/api/v1/health")

        [record] = [r for r in caplog.records if r.name == "revenue_api.access"]
        assert "connection_id" not in record.request
        assert record.request["credential"] is None


class TestJSONFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("revenue_api.test", logging.INFO, __file__, 1, "synced %d", (3,), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_single_line_json(self) -> None:
        line = JSONFormatter().format(self._record())
        payload = json.loads(line)

        assert "\n" not in line
        assert payload["message"] == "synced 3"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "revenue_api.test"

    def test_structured_extras(self) -> None:
        payload = json.loads(JSONFormatter().format(self._record(sync={"success": 1}, other="ignored")))
        assert payload["sync"] == {"success": 1}
        assert "other" not in payload

    def test_exception_included(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "revenue_api.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        payload = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]
