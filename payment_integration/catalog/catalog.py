"""
Provider catalog lookups.

Answers the provider query API: which rails are active, which ones cover a
country/currency pair, and what a given rail's configuration is. The catalog
is loaded once at startup and never mutated afterwards.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from payment_integration.catalog.provider_config import DEFAULT_PROVIDERS, ProviderConfig
from payment_integration.errors import NotFoundError

logger = logging.getLogger("payment_integration.catalog")


@dataclass
class Availability:
    """Result of an availability check for one provider."""

    provider: str
    is_active: bool
    available: bool
    country_supported: Optional[bool] = None
    currency_supported: Optional[bool] = None


class ProviderCatalog:
    """Read-only view over the configured providers."""

    def __init__(self, providers: Iterable[ProviderConfig]):
        self._providers: Mapping[str, ProviderConfig] = MappingProxyType(
            {p.name: p for p in providers}
        )

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def names(self) -> list[str]:
        return sorted(self._providers)

    def get(self, name: str) -> ProviderConfig:
        config = self._providers.get(name)
        if config is None:
            raise NotFoundError(f"Provider not found: {name}")
        return config

    def get_active(self, name: str) -> ProviderConfig:
        config = self.get(name)
        if not config.is_active:
            raise NotFoundError(f"Provider {name} not found or inactive")
        return config

    def active_providers(
        self,
        country: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> list[ProviderConfig]:
        result = []
        for name in self.names():
            config = self._providers[name]
            if not config.is_active:
                continue
            if country and country.upper() not in config.supported_countries:
                continue
            if currency and currency.upper() not in config.supported_currencies:
                continue
            result.append(config)
        return result

    def check_availability(
        self,
        name: str,
        country: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Availability:
        config = self.get(name)
        result = Availability(provider=name, is_active=config.is_active, available=config.is_active)

        if country:
            result.country_supported = country.upper() in config.supported_countries
            result.available = result.available and result.country_supported

        if currency:
            result.currency_supported = currency.upper() in config.supported_currencies
            result.available = result.available and result.currency_supported

        return result


def load_catalog(path: Optional[str] = None) -> ProviderCatalog:
    """
    Build the catalog from a JSON file, or from the built-in defaults.

    Args:
        path: Optional path to a JSON list of provider objects.
    """
    raw = DEFAULT_PROVIDERS
    if path:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        logger.info("Loaded %d provider configs from %s", len(raw), path)
    return ProviderCatalog(ProviderConfig.model_validate(item) for item in raw)
