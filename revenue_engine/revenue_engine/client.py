"""Consumer-side client for a self-hosted revenue instance.

The consuming platform pulls exports from an operator-controlled instance.
A valid signature proves the bytes came from the holder of the instance's
private key, not that the figures are true, so data fetched this way is
always labelled :attr:`TrustLevel.SELF_REPORTED`.  Only data pulled from a
processor under platform custody is ``PLATFORM_VERIFIED``.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx
from pydantic import BaseModel, TypeAdapter

from revenue_engine.errors import ProviderError, SigningError
from revenue_engine.models import Interval, RevenueDataPoint, SignedPayload, TrustLevel
from revenue_engine.signing import SigningService

logger = logging.getLogger(__name__)

_POINTS = TypeAdapter(list[RevenueDataPoint])


class VerifiedRevenue(BaseModel):
    """Revenue points from a signed export that passed verification."""

    points: list[RevenueDataPoint]
    signed: SignedPayload
    trust_level: TrustLevel = TrustLevel.SELF_REPORTED


class StandaloneClient:
    """HTTP client for ``/api/v1`` of a self-hosted instance.

    Parameters
    ----------
    endpoint:
        Base URL of the instance, e.g. ``https://revenue.example.com``.
    api_key:
        API key issued by the instance (sent as ``X-API-Key``).
    public_key:
        Optional pinned base64 public key.  When set, signed exports from
        any other key are rejected.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        public_key: str | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = endpoint.rstrip("/") + "/api/v1"
        self._api_key = api_key
        self._public_key = public_key
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._http.request(
                method,
                f"{self._base_url}{path}",
                headers={"X-API-Key": self._api_key, "Accept": "application/json"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise ProviderError("standalone", f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                message = response.json().get("message")
            except ValueError:
                message = None
            raise ProviderError("standalone", message or f"{method} {path} returned HTTP {response.status_code}")
        return response.json()

    async def get_health_status(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def validate_connection(self) -> bool:
        """``True`` when the instance answers and is not unhealthy."""
        try:
            health = await self.get_health_status()
        except ProviderError as exc:
            logger.info("Standalone instance unreachable: %s", exc)
            return False
        return health.get("status") != "unhealthy"

    @staticmethod
    def _body(start: date, end: date, interval: Interval) -> dict[str, str]:
        return {"start_date": start.isoformat(), "end_date": end.isoformat(), "interval": interval.value}

    async def fetch_revenue(
        self,
        start: date,
        end: date,
        interval: Interval = Interval.MONTHLY,
    ) -> list[RevenueDataPoint]:
        """Fetch the unsigned export."""
        body = await self._request("POST", "/revenue", json=self._body(start, end, interval))
        return _POINTS.validate_python(body)

    async def fetch_signed_revenue(
        self,
        start: date,
        end: date,
        interval: Interval = Interval.MONTHLY,
    ) -> VerifiedRevenue:
        """Fetch and verify the signed export.

        Raises
        ------
        SigningError
            If the signature is invalid or the signer is not the pinned key.
        """
        body = await self._request("POST", "/revenue/signed", json=self._body(start, end, interval))
        signed = SignedPayload.model_validate(body)
        if not SigningService.verify(signed, expected_public_key=self._public_key):
            raise SigningError("Data signature verification failed")
        points = _POINTS.validate_python(SigningService.load_data(signed))
        return VerifiedRevenue(points=points, signed=signed)
