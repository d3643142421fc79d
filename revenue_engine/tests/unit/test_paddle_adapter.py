"""Unit tests for the Paddle Classic adapter using ``httpx.MockTransport``."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import date
from decimal import Decimal

import httpx
import pytest

from revenue_engine.errors import ProviderError
from revenue_engine.models import DateRange, Interval, ProviderConfig
from revenue_engine.providers.paddle import LIVE_URL, SANDBOX_URL, PaddleAdapter, parse_signature_header


class PaddleStub:
    """Routes vendor endpoints to canned ``response`` payloads and records calls."""

    def __init__(self, **responses: object) -> None:
        self.responses = responses
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.split("/api/2.0/", 1)[1]
        body = json.loads(request.content)
        self.calls.append((endpoint, body))
        handler = self.responses.get(endpoint)
        if handler is None:
            return httpx.Response(200, json={"success": False, "error": {"message": f"no stub for {endpoint}"}})
        response = handler(body) if callable(handler) else handler
        return httpx.Response(200, json={"success": True, "response": response})


def _adapter(stub: PaddleStub, **config: object) -> PaddleAdapter:
    settings = {"api_key": "auth-code", "api_secret": "12345", "webhook_secret": "pdl_secret", **config}
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return PaddleAdapter(ProviderConfig(**settings), http_client=client)


class TestValidateCredentials:
    @pytest.mark.asyncio
    async def test_valid(self) -> None:
        stub = PaddleStub(**{"product/get_products": {"products": []}})
        result = await _adapter(stub).validate_credentials()

        assert result.valid is True
        endpoint, body = stub.calls[0]
        assert endpoint == "product/get_products"
        assert body["vendor_id"] == "12345"
        assert body["vendor_auth_code"] == "auth-code"

    @pytest.mark.asyncio
    async def test_rejected(self) -> None:
        result = await _adapter(PaddleStub()).validate_credentials()
        assert result.valid is False
        assert "no stub" in (result.error or "")

    @pytest.mark.asyncio
    async def test_vendor_id_required(self) -> None:
        stub = PaddleStub()
        result = await _adapter(stub, api_secret=None).validate_credentials()
        assert result.valid is False
        assert stub.calls == []

    def test_sandbox_url(self) -> None:
        assert _adapter(PaddleStub(), environment="sandbox").base_url == SANDBOX_URL
        assert _adapter(PaddleStub()).base_url == LIVE_URL


class TestFetchRevenue:
    @pytest.mark.asyncio
    async def test_completed_transactions_bucketed(self, june_range: DateRange) -> None:
        pages = {
            1: [
                {"created_at": "2026-06-10T18:00:00Z", "status": "completed", "amount": "70.00", "currency": "USD"},
                {"created_at": "2026-06-10T09:00:00Z", "status": "completed", "amount": "50.00", "currency": "USD"},
                {"created_at": "2026-06-09T09:00:00Z", "status": "refunded", "amount": "99.00", "currency": "USD"},
            ],
            2: [
                {"created_at": "2026-06-02T09:00:00Z", "status": "paid", "amount": "10.00", "currency": "USD"},
                {"created_at": "2026-05-20T09:00:00Z", "status": "completed", "amount": "500.00", "currency": "USD"},
            ],
        }
        stub = PaddleStub(**{"product/get_transactions": lambda body: pages.get(body["page"], [])})
        points = await _adapter(stub).fetch_revenue(june_range, Interval.DAILY)

        assert [(p.date, p.revenue) for p in points] == [
            (date(2026, 6, 2), Decimal("10.00")),
            (date(2026, 6, 10), Decimal("120.00")),
        ]
        # The second page already reached before the window; no third request.
        assert [body["page"] for _, body in stub.calls] == [1, 2]
        assert stub.calls[0][1]["from"] == "2026-06-01"
        assert stub.calls[0][1]["to"] == "2026-06-30"

    @pytest.mark.asyncio
    async def test_rejected_call_raises(self, june_range: DateRange) -> None:
        with pytest.raises(ProviderError, match="paddle"):
            await _adapter(PaddleStub()).fetch_revenue(june_range)

    @pytest.mark.asyncio
    async def test_http_error_raises(self, june_range: DateRange) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(502)))
        adapter = PaddleAdapter(ProviderConfig(api_key="a", api_secret="1"), http_client=client)
        with pytest.raises(ProviderError, match="HTTP 502"):
            await adapter.fetch_revenue(june_range)


class TestCurrentMetrics:
    @pytest.mark.asyncio
    async def test_mrr_uses_plan_billing_type(self) -> None:
        stub = PaddleStub(
            **{
                "subscription/plans": [
                    {"id": 1, "billing_type": "year", "billing_period": 1},
                    {"id": 2, "billing_type": "month", "billing_period": 1},
                ],
                "subscription/users": [
                    {"user_id": 10, "plan_id": 1, "next_payment": {"amount": 120, "currency": "USD"}},
                    {"user_id": 11, "plan_id": 2, "next_payment": {"amount": 30, "currency": "USD"}},
                    {"user_id": 12, "plan_id": 2, "next_payment": {"amount": 30, "currency": "EUR"}},
                ],
                "product/get_transactions": [],
            }
        )
        metrics = await _adapter(stub).fetch_current_metrics("USD")

        assert metrics.mrr == Decimal("40.00")
        assert metrics.customer_count == 2
        users_call = next(body for endpoint, body in stub.calls if endpoint == "subscription/users")
        assert users_call["state"] == "active"

    @pytest.mark.asyncio
    async def test_customer_count_distinct(self) -> None:
        stub = PaddleStub(
            **{
                "subscription/users": [
                    {"user_id": 1},
                    {"user_id": 1},
                    {"user_email": "b@example.com"},
                ]
            }
        )
        assert await _adapter(stub).fetch_customer_count() == 2


class TestVerifyWebhook:
    @staticmethod
    def _sign(payload: bytes, timestamp: int, secret: str = "pdl_secret") -> str:
        digest = hmac.new(secret.encode(), f"{timestamp}:".encode() + payload, hashlib.sha256).hexdigest()
        return f"ts={timestamp};h1={digest}"

    @pytest.mark.asyncio
    async def test_valid(self) -> None:
        payload = b'{"event_type":"transaction.completed"}'
        header = self._sign(payload, int(time.time()))
        assert await _adapter(PaddleStub()).verify_webhook(payload, header) is True

    @pytest.mark.asyncio
    async def test_tampered_body(self) -> None:
        header = self._sign(b"{}", int(time.time()))
        assert await _adapter(PaddleStub()).verify_webhook(b'{"x":1}', header) is False

    @pytest.mark.asyncio
    async def test_wrong_secret(self) -> None:
        header = self._sign(b"{}", int(time.time()), secret="other")
        assert await _adapter(PaddleStub()).verify_webhook(b"{}", header) is False

    @pytest.mark.asyncio
    async def test_stale_timestamp(self) -> None:
        header = self._sign(b"{}", int(time.time()) - 3600)
        assert await _adapter(PaddleStub()).verify_webhook(b"{}", header) is False

    @pytest.mark.asyncio
    async def test_malformed_header(self) -> None:
        assert await _adapter(PaddleStub()).verify_webhook(b"{}", "garbage") is False

    def test_parse_signature_header(self) -> None:
        assert parse_signature_header("ts=1;h1=aa;h1=bb") == ("1", ["aa", "bb"])
