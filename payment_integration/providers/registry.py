"""
Provider registry: provider name -> adapter instance.

Built once at startup and read-only afterwards. This is the only place the
service selects behaviour by provider identity.
"""

from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional

import httpx

from payment_integration.config import Settings
from payment_integration.errors import NotFoundError
from payment_integration.providers.afrimoney import AfriMoneyAdapter
from payment_integration.providers.base import PaymentAdapter
from payment_integration.providers.orange_money import OrangeMoneyAdapter
from payment_integration.providers.stripe import StripeAdapter
from payment_integration.providers.token_cache import TokenCache


class ProviderRegistry(Mapping[str, PaymentAdapter]):
    def __init__(self, adapters: Iterable[PaymentAdapter]):
        self._adapters = MappingProxyType({adapter.name: adapter for adapter in adapters})

    def __getitem__(self, name: str) -> PaymentAdapter:
        return self._adapters[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)

    def get_adapter(self, name: str) -> PaymentAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise NotFoundError(f"Provider not supported: {name}")
        return adapter


def build_registry(
    settings: Settings,
    http_client: httpx.AsyncClient,
    token_cache: Optional[TokenCache] = None,
) -> ProviderRegistry:
    """Wire the three production adapters from configuration."""
    tokens = token_cache or TokenCache(margin_seconds=settings.token_expiry_margin_seconds)
    timeout = settings.provider_timeout_seconds

    return ProviderRegistry([
        StripeAdapter(
            http_client,
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            base_url=settings.stripe_base_url,
            timeout=timeout,
            signature_tolerance=settings.stripe_signature_tolerance_seconds,
            return_url=settings.frontend_url,
        ),
        OrangeMoneyAdapter(
            http_client,
            tokens,
            client_id=settings.orange_money_client_id,
            client_secret=settings.orange_money_client_secret,
            merchant_key=settings.orange_money_merchant_key,
            webhook_secret=settings.orange_money_webhook_secret,
            base_url=settings.orange_money_base_url,
            timeout=timeout,
            callback_base_url=settings.callback_base_url,
            frontend_url=settings.frontend_url,
        ),
        AfriMoneyAdapter(
            http_client,
            tokens,
            api_user=settings.afrimoney_api_user,
            api_key=settings.afrimoney_api_key,
            subscription_key=settings.afrimoney_subscription_key,
            webhook_secret=settings.afrimoney_webhook_secret,
            base_url=settings.afrimoney_base_url,
            timeout=timeout,
            environment=settings.afrimoney_environment,
            callback_base_url=settings.callback_base_url,
        ),
    ])
