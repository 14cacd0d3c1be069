"""
Per-provider fee schedules, limits and coverage.

This is the static configuration the Fee & Limit Calculator and the
provider query API read. It is owned outside this service: the defaults
below match what the platform seeds, and a JSON file with the same shape
(a list of provider objects) can replace them via PROVIDER_CATALOG_PATH.

Fees are a fixed amount plus a percentage of the payment amount. Limits are
per operation type: min and max per payment, and a daily aggregate per user.
"""

from decimal import Decimal

from pydantic import BaseModel, Field


class FeeSchedule(BaseModel):
    fixed: Decimal = Decimal("0")
    percentage: Decimal = Decimal("0")  # 2.9 means 2.9 %


class LimitSchedule(BaseModel):
    min: Decimal = Decimal("1")
    max: Decimal = Decimal("10000")
    daily: Decimal = Decimal("50000")


class ProviderConfig(BaseModel):
    """Configuration for one payment rail."""

    name: str
    display_name: str
    is_active: bool = True
    supported_currencies: list[str] = Field(default_factory=list)
    supported_countries: list[str] = Field(default_factory=list)
    payment_methods: list[str] = Field(default_factory=list)
    fees: dict[str, FeeSchedule] = Field(default_factory=dict)
    limits: dict[str, LimitSchedule] = Field(default_factory=dict)
    supports_refunds: bool = False

    model_config = {"frozen": True}


DEFAULT_PROVIDERS: list[dict] = [
    # ─── Card processor ───────────────────────────────────────────────
    {
        "name": "stripe",
        "display_name": "Stripe",
        "supported_currencies": ["USD", "EUR", "GBP", "CAD"],
        "supported_countries": ["US", "CA", "GB", "FR", "DE", "AU"],
        "payment_methods": ["card"],
        "supports_refunds": True,
        "fees": {
            "deposit": {"fixed": "0.30", "percentage": "2.9"},
            "payment": {"fixed": "0.30", "percentage": "2.9"},
            "withdrawal": {"fixed": "0.25", "percentage": "0"},
        },
        "limits": {
            "deposit": {"min": "1", "max": "10000", "daily": "50000"},
            "payment": {"min": "1", "max": "10000", "daily": "50000"},
            "withdrawal": {"min": "1", "max": "10000", "daily": "25000"},
        },
    },
    # ─── Orange Money (XOF / XAF zone) ────────────────────────────────
    # Amounts are in minor-less CFA francs, hence the large limits.
    {
        "name": "orange_money",
        "display_name": "Orange Money",
        "supported_currencies": ["XOF", "XAF", "USD"],
        "supported_countries": ["CI", "SN", "ML", "BF", "NE", "GN", "CM"],
        "payment_methods": ["mobile_money"],
        "fees": {
            "deposit": {"fixed": "0", "percentage": "1.5"},
            "payment": {"fixed": "0", "percentage": "1.5"},
            "withdrawal": {"fixed": "100", "percentage": "1.0"},
        },
        "limits": {
            "deposit": {"min": "100", "max": "1000000", "daily": "2000000"},
            "payment": {"min": "100", "max": "1000000", "daily": "2000000"},
            "withdrawal": {"min": "100", "max": "500000", "daily": "1000000"},
        },
    },
    # ─── AfriMoney (MoMo-style collection / disbursement) ─────────────
    {
        "name": "afrimoney",
        "display_name": "AfriMoney",
        "supported_currencies": ["XOF", "XAF", "GHS", "UGX"],
        "supported_countries": ["GH", "UG", "CI", "SN", "CM", "BF"],
        "payment_methods": ["mobile_money"],
        "fees": {
            "deposit": {"fixed": "0", "percentage": "2.0"},
            "payment": {"fixed": "0", "percentage": "2.0"},
            "withdrawal": {"fixed": "50", "percentage": "1.5"},
        },
        "limits": {
            "deposit": {"min": "50", "max": "2000000", "daily": "5000000"},
            "payment": {"min": "50", "max": "2000000", "daily": "5000000"},
            "withdrawal": {"min": "50", "max": "1000000", "daily": "2000000"},
        },
    },
]
