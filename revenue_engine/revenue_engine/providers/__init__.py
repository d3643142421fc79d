"""Payment processor adapters and the provider registry."""

from __future__ import annotations

import httpx

from revenue_engine.errors import ValidationError
from revenue_engine.models import Provider, ProviderConfig
from revenue_engine.providers.base import ProviderAdapter
from revenue_engine.providers.lemonsqueezy import LemonSqueezyAdapter
from revenue_engine.providers.paddle import PaddleAdapter
from revenue_engine.providers.paypal import PayPalAdapter
from revenue_engine.providers.polar import PolarAdapter
from revenue_engine.providers.stripe_adapter import StripeAdapter

ADAPTERS: dict[Provider, type[ProviderAdapter]] = {
    Provider.STRIPE: StripeAdapter,
    Provider.PADDLE: PaddleAdapter,
    Provider.POLAR: PolarAdapter,
    Provider.PAYPAL: PayPalAdapter,
    Provider.LEMON_SQUEEZY: LemonSqueezyAdapter,
}


def create_adapter(
    provider: Provider | str,
    config: ProviderConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> ProviderAdapter:
    """Instantiate the adapter registered for *provider*.

    Raises
    ------
    ValidationError
        If *provider* is not a supported processor.
    """
    try:
        key = Provider(provider)
    except ValueError as exc:
        raise ValidationError(f"Unsupported provider: {provider!r}") from exc
    return ADAPTERS[key](config, http_client=http_client, timeout=timeout)


__all__ = [
    "ADAPTERS",
    "LemonSqueezyAdapter",
    "PaddleAdapter",
    "PayPalAdapter",
    "PolarAdapter",
    "ProviderAdapter",
    "StripeAdapter",
    "create_adapter",
]
