"""Unit tests for the PayPal adapter using ``httpx.MockTransport``."""

from __future__ import annotations

import json
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from revenue_engine.models import DateRange, Interval, ProviderConfig
from revenue_engine.providers.paypal import PayPalAdapter, split_windows

_WEBHOOK_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-TIME": "2026-06-10T10:00:00Z",
}


def _detail(when: str, value: str, *, status: str = "S", currency: str = "USD", payer: str | None = None) -> dict:
    detail: dict = {
        "transaction_info": {
            "transaction_initiation_date": when,
            "transaction_status": status,
            "transaction_amount": {"value": value, "currency_code": currency},
        }
    }
    if payer is not None:
        detail["payer_info"] = {"account_id": payer}
    return detail


class PayPalStub:
    """Serves the OAuth token and Transaction Search pages."""

    def __init__(self, pages: dict[str, list[dict]] | None = None, *, token_status: int = 200) -> None:
        self.pages = pages or {}
        self.token_status = token_status
        self.token_requests = 0
        self.search_params: list[dict[str, str]] = []
        self.verify_bodies: list[dict] = []
        self.verification_status = "SUCCESS"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/oauth2/token":
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": "A21", "token_type": "Bearer"})

        assert request.headers["Authorization"] == "Bearer A21"
        if path == "/v1/reporting/transactions":
            params = dict(request.url.params)
            self.search_params.append(params)
            details = self.pages.get(params["page"], [])
            return httpx.Response(200, json={"transaction_details": details, "total_pages": len(self.pages)})
        if path == "/v1/notifications/verify-webhook-signature":
            self.verify_bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"verification_status": self.verification_status})
        return httpx.Response(404)


def _adapter(stub: PayPalStub, **config: object) -> PayPalAdapter:
    settings = {"api_key": "client-id", "api_secret": "client-secret", "webhook_secret": "WH-1", **config}
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return PayPalAdapter(ProviderConfig(**settings), http_client=client)


class TestSplitWindows:
    def test_ninety_days_needs_three_windows(self) -> None:
        start = datetime(2026, 4, 1, tzinfo=UTC)
        windows = split_windows(DateRange(start=start, end=start + timedelta(days=90)))

        assert len(windows) == 3
        assert windows[0].start == start
        assert windows[-1].end == start + timedelta(days=90)
        for window in windows:
            assert window.end - window.start < timedelta(days=31)
        for previous, following in zip(windows, windows[1:]):
            assert following.start == previous.end + timedelta(seconds=1)

    def test_short_range_single_window(self, june_range: DateRange) -> None:
        assert split_windows(june_range) == [june_range]


class TestValidateCredentials:
    @pytest.mark.asyncio
    async def test_token_obtained(self) -> None:
        stub = PayPalStub()
        assert (await _adapter(stub).validate_credentials()).valid is True
        assert stub.token_requests == 1

    @pytest.mark.asyncio
    async def test_token_rejected(self) -> None:
        result = await _adapter(PayPalStub(token_status=401)).validate_credentials()
        assert result.valid is False
        assert "401" in (result.error or "")

    @pytest.mark.asyncio
    async def test_secret_required(self) -> None:
        stub = PayPalStub()
        result = await _adapter(stub, api_secret=None).validate_credentials()
        assert result.valid is False
        assert stub.token_requests == 0


class TestFetchRevenue:
    @pytest.mark.asyncio
    async def test_only_successful_incoming_payments(self, june_range: DateRange) -> None:
        stub = PayPalStub(
            {
                "1": [
                    _detail("2026-06-10T09:00:00+0000", "50.00"),
                    _detail("2026-06-10T18:00:00+0000", "70.00"),
                    _detail("2026-06-11T09:00:00+0000", "-20.00"),
                    _detail("2026-06-12T09:00:00+0000", "99.00", status="P"),
                ],
                "2": [_detail("2026-06-20T09:00:00Z", "5.00", currency="EUR")],
            }
        )
        adapter = _adapter(stub)
        points = await adapter.fetch_revenue(june_range, Interval.DAILY)

        assert [(p.date, p.revenue, p.currency) for p in points] == [
            (date(2026, 6, 10), Decimal("120.00"), "USD"),
            (date(2026, 6, 20), Decimal("5.00"), "EUR"),
        ]
        assert [params["page"] for params in stub.search_params] == ["1", "2"]
        assert stub.search_params[0]["start_date"] == "2026-06-01T00:00:00Z"
        # Token fetched once per adapter.
        assert stub.token_requests == 1


class TestCurrentMetrics:
    @pytest.mark.asyncio
    async def test_latest_month_and_distinct_payers(self) -> None:
        moment = (datetime.now(UTC) - timedelta(minutes=1)).strftime("%Y-%m-%dT%H:%M:%SZ")
        stub = PayPalStub(
            {
                "1": [
                    _detail(moment, "30.00", payer="P1"),
                    _detail(moment, "20.00", payer="P1"),
                    _detail(moment, "10.00", payer="P2"),
                    _detail(moment, "99.00", currency="EUR", payer="P3"),
                ]
            }
        )
        metrics = await _adapter(stub).fetch_current_metrics("USD")

        assert metrics.mrr == Decimal("60.00")
        assert metrics.arr == Decimal("720.00")
        assert metrics.total_revenue == Decimal("60.00")
        assert metrics.customer_count == 2


class TestVerifyWebhook:
    @pytest.mark.asyncio
    async def test_posts_transmission_to_paypal(self) -> None:
        stub = PayPalStub()
        ok = await _adapter(stub).verify_webhook(b'{"id":"WH-EVT"}', "sig==", _WEBHOOK_HEADERS)

        assert ok is True
        body = stub.verify_bodies[0]
        assert body["webhook_id"] == "WH-1"
        assert body["transmission_sig"] == "sig=="
        assert body["transmission_id"] == "tx-1"
        assert body["webhook_event"] == {"id": "WH-EVT"}

    @pytest.mark.asyncio
    async def test_failure_status(self) -> None:
        stub = PayPalStub()
        stub.verification_status = "FAILURE"
        assert await _adapter(stub).verify_webhook(b"{}", "sig==", _WEBHOOK_HEADERS) is False

    @pytest.mark.asyncio
    async def test_missing_transmission_header(self) -> None:
        stub = PayPalStub()
        headers = {k: v for k, v in _WEBHOOK_HEADERS.items() if k != "PAYPAL-CERT-URL"}
        assert await _adapter(stub).verify_webhook(b"{}", "sig==", headers) is False
        assert stub.verify_bodies == []

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        assert await _adapter(PayPalStub()).verify_webhook(b"not json", "sig==", _WEBHOOK_HEADERS) is False
