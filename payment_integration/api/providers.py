"""
Provider query endpoints.

GET /providers                      - Active providers, optionally by country/currency.
GET /providers/{name}               - One provider's configuration.
GET /providers/{name}/fees          - Fee quote for an amount and operation type.
GET /providers/{name}/limits        - Limits for an operation type.
GET /providers/{name}/availability  - Is the provider usable for a country/currency?
GET /providers/{name}/stats         - Payment volume by status and type.
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from payment_integration.api.dependencies import get_catalog
from payment_integration.catalog import ProviderCatalog, ProviderConfig
from payment_integration.database import get_session
from payment_integration.engine.fees import quote_fee
from payment_integration.engine.payments import provider_stats
from payment_integration.errors import ValidationError
from payment_integration.models.enums import PaymentType

router = APIRouter(prefix="/providers", tags=["providers"])


class ProviderSummary(BaseModel):
    name: str
    display_name: str
    is_active: bool
    supported_currencies: list[str]
    supported_countries: list[str]
    payment_methods: list[str]
    supports_refunds: bool


class FeeQuoteResponse(BaseModel):
    provider: str
    operation_type: str
    amount: Decimal
    currency: str
    fixed_fee: Decimal
    percentage_fee: Decimal
    total_fee: Decimal
    net_amount: Decimal


class LimitsResponse(BaseModel):
    provider: str
    operation_type: str
    min: Decimal
    max: Decimal
    daily: Decimal


class AvailabilityResponse(BaseModel):
    provider: str
    is_active: bool
    available: bool
    country_supported: Optional[bool] = None
    currency_supported: Optional[bool] = None


def _summary(config: ProviderConfig) -> ProviderSummary:
    return ProviderSummary(
        name=config.name,
        display_name=config.display_name,
        is_active=config.is_active,
        supported_currencies=config.supported_currencies,
        supported_countries=config.supported_countries,
        payment_methods=config.payment_methods,
        supports_refunds=config.supports_refunds,
    )


def _operation(value: str) -> str:
    if value not in {t.value for t in PaymentType}:
        raise ValidationError(f"Unsupported operation type: {value}")
    return value


@router.get("", response_model=list[ProviderSummary])
async def list_providers(
    country: Optional[str] = Query(None, description="ISO country code"),
    currency: Optional[str] = Query(None, description="ISO currency code"),
    catalog: ProviderCatalog = Depends(get_catalog),
):
    return [_summary(c) for c in catalog.active_providers(country=country, currency=currency)]


@router.get("/{name}", response_model=ProviderSummary)
async def get_provider(name: str, catalog: ProviderCatalog = Depends(get_catalog)):
    return _summary(catalog.get(name))


@router.get("/{name}/fees", response_model=FeeQuoteResponse)
async def get_fees(
    name: str,
    amount: Decimal = Query(..., gt=0),
    type: str = Query("deposit", description="deposit, withdrawal or payment"),
    currency: str = Query("USD"),
    catalog: ProviderCatalog = Depends(get_catalog),
):
    quote = quote_fee(catalog.get_active(name), amount, _operation(type), currency)
    return FeeQuoteResponse(
        provider=quote.provider,
        operation_type=quote.operation_type,
        amount=quote.amount,
        currency=quote.currency,
        fixed_fee=quote.fixed,
        percentage_fee=quote.percentage,
        total_fee=quote.total,
        net_amount=quote.net_amount,
    )


@router.get("/{name}/limits", response_model=LimitsResponse)
async def get_limits(
    name: str,
    type: str = Query("deposit", description="deposit, withdrawal or payment"),
    catalog: ProviderCatalog = Depends(get_catalog),
):
    config = catalog.get_active(name)
    limits = config.limits.get(_operation(type))
    if limits is None:
        raise ValidationError(f"Limits not defined for {name} operation type: {type}")
    return LimitsResponse(provider=name, operation_type=type, min=limits.min, max=limits.max, daily=limits.daily)


@router.get("/{name}/availability", response_model=AvailabilityResponse)
async def get_availability(
    name: str,
    country: Optional[str] = Query(None),
    currency: Optional[str] = Query(None),
    catalog: ProviderCatalog = Depends(get_catalog),
):
    a = catalog.check_availability(name, country=country, currency=currency)
    return AvailabilityResponse(
        provider=a.provider,
        is_active=a.is_active,
        available=a.available,
        country_supported=a.country_supported,
        currency_supported=a.currency_supported,
    )


@router.get("/{name}/stats")
async def get_provider_stats(
    name: str,
    period: str = Query("30d", description="7d, 30d, 90d or 1y"),
    session: AsyncSession = Depends(get_session),
    catalog: ProviderCatalog = Depends(get_catalog),
):
    catalog.get(name)
    return {"provider": name, "period": period, "statistics": await provider_stats(session, name, period)}
