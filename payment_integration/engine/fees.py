"""
Fee quoting and limit admission checks.

Before a payment record is created we verify, in order:
  1. Amount is a positive number
  2. The provider has a fee and limit schedule for the operation type
  3. Amount is within the provider's per-payment min/max
  4. The user's same-day total plus this amount stays within the daily limit

The fee is computed here exactly once and frozen onto the payment, so users
are charged what they were quoted even if the schedule changes later.

Everything in this module is pure: the caller supplies the daily total.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from payment_integration.catalog.provider_config import FeeSchedule, LimitSchedule, ProviderConfig
from payment_integration.errors import LimitExceededError, ValidationError

CENT = Decimal("0.01")


@dataclass
class FeeQuote:
    """Breakdown of the fee for one prospective payment."""

    provider: str
    operation_type: str
    amount: Decimal
    currency: str
    fixed: Decimal
    percentage: Decimal
    total: Decimal

    @property
    def net_amount(self) -> Decimal:
        return self.amount - self.total


def to_amount(value: Any) -> Decimal:
    """Coerce a caller-supplied amount to a 2-dp Decimal, rejecting junk."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Invalid amount: {value}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _fee_schedule(config: ProviderConfig, operation_type: str) -> FeeSchedule:
    schedule = config.fees.get(operation_type)
    if schedule is None:
        raise ValidationError(
            f"Fee configuration not found for {config.name} operation type: {operation_type}"
        )
    return schedule


def _limit_schedule(config: ProviderConfig, operation_type: str) -> LimitSchedule:
    schedule = config.limits.get(operation_type)
    if schedule is None:
        raise ValidationError(
            f"Limits not defined for {config.name} operation type: {operation_type}"
        )
    return schedule


def quote_fee(config: ProviderConfig, amount: Any, operation_type: str, currency: str = "USD") -> FeeQuote:
    """
    Quote the fee for an operation.

    Args:
        config: Provider configuration.
        amount: Payment amount.
        operation_type: "deposit", "withdrawal" or "payment".
        currency: Currency the amount (and fee) are expressed in.

    Returns:
        FeeQuote with fixed and percentage components, rounded to cents.
    """
    value = to_amount(amount)
    schedule = _fee_schedule(config, operation_type)

    fixed = schedule.fixed.quantize(CENT, rounding=ROUND_HALF_UP)
    percentage = (value * schedule.percentage / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)

    return FeeQuote(
        provider=config.name,
        operation_type=operation_type,
        amount=value,
        currency=currency.upper(),
        fixed=fixed,
        percentage=percentage,
        total=fixed + percentage,
    )


def compute_fee(config: ProviderConfig, amount: Any, operation_type: str) -> Decimal:
    """Total fee (fixed + percentage) for an operation."""
    return quote_fee(config, amount, operation_type).total


def validate_limits(
    config: ProviderConfig,
    amount: Any,
    operation_type: str,
    daily_total: Decimal = Decimal("0"),
) -> None:
    """
    Check an amount against the provider's limits.

    Args:
        config: Provider configuration.
        amount: Payment amount.
        operation_type: "deposit", "withdrawal" or "payment".
        daily_total: Sum of the user's same-day completed/processing payments
            for this provider and operation type.

    Raises:
        ValidationError: Non-positive amount or unknown operation type.
        LimitExceededError: Outside min/max, or over the daily allowance.
    """
    value = to_amount(amount)
    limits = _limit_schedule(config, operation_type)

    if value < limits.min:
        raise LimitExceededError(
            f"Amount {value} is below minimum limit of {limits.min}",
            limit_name="min",
            limit_value=float(limits.min),
        )

    if value > limits.max:
        raise LimitExceededError(
            f"Amount {value} exceeds maximum limit of {limits.max}",
            limit_name="max",
            limit_value=float(limits.max),
        )

    if daily_total + value > limits.daily:
        raise LimitExceededError(
            f"Daily limit of {limits.daily} would be exceeded "
            f"(already {daily_total} today, requested {value})",
            limit_name="daily",
            limit_value=float(limits.daily),
        )
