from payment_integration.catalog.catalog import Availability, ProviderCatalog, load_catalog
from payment_integration.catalog.provider_config import (
    DEFAULT_PROVIDERS,
    FeeSchedule,
    LimitSchedule,
    ProviderConfig,
)

__all__ = [
    "Availability",
    "DEFAULT_PROVIDERS",
    "FeeSchedule",
    "LimitSchedule",
    "ProviderCatalog",
    "ProviderConfig",
    "load_catalog",
]
