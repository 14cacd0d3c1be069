"""
Payment service: admission, initiation, cancellation, refunds and queries.

Flow for a new payment:

  1. Admission (provider active, method and currency supported, amount
     within min/max/daily limits). Any failure here writes nothing.
  2. Fee quoted once and frozen onto the pending Payment record.
  3. Processing moves it pending -> processing and commits *before* calling
     the rail, so a crash mid-call leaves a payment reconciliation can find.
  4. The rail's answer is attached (transaction id, metadata) and any
     terminal status it reported goes through the guarded transition.

A failed initiation lands the payment in ``failed``; it is never left
hanging in ``processing`` with nothing at the rail.
"""

import logging
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_integration.audit.logger import log_event
from payment_integration.catalog import ProviderCatalog
from payment_integration.engine.fees import quote_fee, to_amount, validate_limits
from payment_integration.engine.state_machine import (
    attach_provider_transaction_id,
    transition_payment,
)
from payment_integration.errors import (
    InvalidTransitionError,
    NotFoundError,
    ProviderRequestError,
    RefundUnsupportedError,
    ValidationError,
)
from payment_integration.events.outbox import publish_committed
from payment_integration.events.publisher import EventPublisher
from payment_integration.models.enums import PaymentStatus, PaymentType
from payment_integration.models.payment import AuditLog, Payment
from payment_integration.providers.base import PaymentRequest
from payment_integration.providers.registry import ProviderRegistry

logger = logging.getLogger("payment_integration.payments")

PERIODS = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}

# Statuses that count against a user's daily allowance.
DAILY_LIMIT_STATUSES = (PaymentStatus.COMPLETED.value, PaymentStatus.PROCESSING.value)


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    delta = PERIODS.get(period)
    if delta is None:
        raise ValidationError(f"Invalid period: {period}. Use one of {', '.join(PERIODS)}")
    return (now or datetime.now(timezone.utc)) - delta


async def get_payment(session: AsyncSession, payment_id: str) -> Payment:
    payment = await session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment not found: {payment_id}")
    return payment


async def daily_total(
    session: AsyncSession,
    user_id: str,
    provider: str,
    payment_type: str,
    now: Optional[datetime] = None,
) -> Decimal:
    """Sum of the user's completed/processing payments since UTC midnight."""
    now = now or datetime.now(timezone.utc)
    midnight = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    result = await session.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.user_id == user_id,
            Payment.provider == provider,
            Payment.type == payment_type,
            Payment.status.in_(DAILY_LIMIT_STATUSES),
            Payment.created_at >= midnight,
        )
    )
    return Decimal(str(result.scalar_one()))


async def create_payment(
    session: AsyncSession,
    catalog: ProviderCatalog,
    *,
    user_id: str,
    amount: Any,
    currency: str,
    provider: str,
    payment_type: str,
    payment_method_type: str,
    payment_method_details: Optional[dict] = None,
    description: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Payment:
    """
    Admit and record a new pending payment.

    Raises:
        ValidationError: Unknown/inactive provider, unsupported type, method
            or currency, or a malformed amount.
        LimitExceededError: Outside the provider's limits.
    """
    if provider not in catalog or not catalog.get(provider).is_active:
        raise ValidationError(f"Provider {provider} not found or inactive")
    config = catalog.get(provider)

    if payment_type not in {t.value for t in PaymentType}:
        raise ValidationError(f"Unsupported payment type: {payment_type}")
    if payment_method_type not in config.payment_methods:
        raise ValidationError(f"{config.display_name} does not support {payment_method_type} payments")

    currency = (currency or "").upper()
    if currency not in config.supported_currencies:
        raise ValidationError(f"{config.display_name} does not support currency {currency}")

    value = to_amount(amount)
    spent_today = await daily_total(session, user_id, provider, payment_type)
    validate_limits(config, value, payment_type, daily_total=spent_today)
    quote = quote_fee(config, value, payment_type, currency)

    payment = Payment(
        user_id=user_id,
        amount=value,
        currency=currency,
        provider=provider,
        type=payment_type,
        payment_method_type=payment_method_type,
        payment_method_details=payment_method_details or {},
        description=description,
        metadata_=metadata or {},
        fee_amount=quote.total,
        fee_currency=quote.currency,
        status=PaymentStatus.PENDING.value,
    )
    session.add(payment)
    await session.flush()

    await log_event(session, "payment_created", payment_id=payment.payment_id, details={
        "provider": provider,
        "type": payment_type,
        "amount": str(value),
        "currency": currency,
        "fee": str(quote.total),
    })
    await session.commit()

    logger.info(
        "Payment %s created: %s %s %s via %s (fee %s)",
        payment.payment_id[:8], payment_type, value, currency, provider, quote.total,
    )
    return payment


async def process_payment(
    session: AsyncSession,
    registry: ProviderRegistry,
    publisher: EventPublisher,
    payment_id: str,
) -> Payment:
    """
    Submit a pending payment to its rail.

    Raises:
        NotFoundError: Unknown payment.
        InvalidTransitionError: The payment is not pending.
        ProviderRequestError / ValidationError: The rail refused, could not be
            reached or answered with a malformed reply. The payment is already
            marked failed when this raises.
    """
    payment = await get_payment(session, payment_id)
    if payment.status != PaymentStatus.PENDING.value:
        raise InvalidTransitionError(payment.status, PaymentStatus.PROCESSING.value)
    adapter = registry.get_adapter(payment.provider)

    outcome = await transition_payment(session, payment_id, PaymentStatus.PROCESSING, source="api", strict=True)
    await session.commit()
    if not outcome.applied:
        # Another request submitted it first.
        await session.refresh(payment)
        raise InvalidTransitionError(payment.status, PaymentStatus.PROCESSING.value)

    try:
        result = await adapter.initiate(
            PaymentRequest.from_payment(payment),
            payment.payment_method_details or {},
        )
    except (ProviderRequestError, ValidationError) as e:
        await _fail_initiation(session, publisher, adapter.name, payment_id, e.message)
        raise
    except Exception as e:
        reason = f"Unexpected error: {e!r}"
        await _fail_initiation(session, publisher, adapter.name, payment_id, reason)
        raise ProviderRequestError(reason, retriable=False, provider=adapter.name) from e

    await attach_provider_transaction_id(session, payment_id, result.provider_transaction_id)
    payment.metadata_ = {**(payment.metadata_ or {}), **{k: v for k, v in result.metadata.items() if v is not None}}
    await log_event(session, "provider_initiated", payment_id=payment_id, details={
        "provider": adapter.name,
        "provider_transaction_id": result.provider_transaction_id,
        "status": result.status.value,
    })

    events = []
    if result.status != PaymentStatus.PROCESSING:
        outcome = await transition_payment(session, payment_id, result.status, source="initiation")
        events.append(outcome.event)

    await session.commit()
    await publish_committed(session, publisher, events)
    await session.refresh(payment)
    return payment


async def _fail_initiation(
    session: AsyncSession,
    publisher: EventPublisher,
    provider: str,
    payment_id: str,
    reason: str,
) -> None:
    logger.error("Payment %s: initiation with %s failed: %s", payment_id[:8], provider, reason)
    await log_event(session, "provider_initiation_failed", payment_id=payment_id, details={
        "provider": provider,
        "error": reason,
    })
    outcome = await transition_payment(
        session, payment_id, PaymentStatus.FAILED,
        source="initiation", failure_reason=reason,
    )
    await session.commit()
    await publish_committed(session, publisher, [outcome.event])


async def cancel_payment(
    session: AsyncSession,
    registry: ProviderRegistry,
    payment_id: str,
    reason: Optional[str] = None,
) -> Payment:
    """
    Cancel an in-flight payment at the rail, then locally.

    Only ``processing`` payments can be cancelled.
    """
    payment = await get_payment(session, payment_id)
    if payment.status != PaymentStatus.PROCESSING.value:
        raise InvalidTransitionError(payment.status, PaymentStatus.CANCELLED.value)

    if payment.provider_transaction_id:
        adapter = registry.get_adapter(payment.provider)
        result = await adapter.cancel(payment.provider_transaction_id)
        if result.status != PaymentStatus.CANCELLED:
            raise ProviderRequestError(
                f"{adapter.name} reports {result.status.value} after cancel",
                retriable=False,
                provider=adapter.name,
            )

    outcome = await transition_payment(
        session, payment_id, PaymentStatus.CANCELLED,
        source="api", failure_reason=reason or "Cancelled by user", strict=True,
    )
    if not outcome.applied:
        # A webhook or poll settled it while we were talking to the rail.
        await session.commit()
        await session.refresh(payment)
        raise InvalidTransitionError(payment.status, PaymentStatus.CANCELLED.value)

    await session.commit()
    await session.refresh(payment)
    logger.info("Payment %s cancelled", payment_id[:8])
    return payment


async def refund_payment(
    session: AsyncSession,
    registry: ProviderRegistry,
    publisher: EventPublisher,
    payment_id: str,
    amount: Any = None,
    reason: Optional[str] = None,
) -> Payment:
    """
    Refund a completed payment.

    Raises:
        InvalidTransitionError: The payment is not completed.
        ValidationError: Refund amount exceeds the payment amount.
        RefundUnsupportedError: The rail has no refunds. Not retriable.
    """
    payment = await get_payment(session, payment_id)
    if payment.status != PaymentStatus.COMPLETED.value:
        raise InvalidTransitionError(payment.status, PaymentStatus.REFUNDED.value)

    original = Decimal(str(payment.amount))
    refund_amount = to_amount(amount) if amount is not None else original
    if refund_amount > original:
        raise ValidationError("Refund amount cannot exceed payment amount")

    adapter = registry.get_adapter(payment.provider)
    try:
        result = await adapter.refund(payment.provider_transaction_id, refund_amount, reason)
    except RefundUnsupportedError:
        await log_event(session, "refund_unsupported", payment_id=payment_id, details={
            "provider": adapter.name,
            "amount": str(refund_amount),
        })
        await session.commit()
        raise

    payment.metadata_ = {
        **(payment.metadata_ or {}),
        "refund": {
            "amount": str(result.amount or refund_amount),
            "reason": reason,
            "refund_id": result.refund_id,
            "refunded_at": datetime.now(timezone.utc).isoformat(),
        },
    }
    outcome = await transition_payment(
        session, payment_id, PaymentStatus.REFUNDED, source="api", strict=True,
    )
    await session.commit()
    await publish_committed(session, publisher, [outcome.event])
    await session.refresh(payment)

    logger.info("Payment %s refunded: %s", payment_id[:8], refund_amount)
    return payment


async def get_payment_trace(session: AsyncSession, payment_id: str) -> list[AuditLog]:
    """Canonical status history for one payment, oldest first."""
    await get_payment(session, payment_id)
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.payment_id == payment_id)
        .order_by(AuditLog.timestamp, AuditLog.id)
    )
    return list(result.scalars().all())


async def list_user_payments(
    session: AsyncSession,
    user_id: str,
    status: Optional[str] = None,
    provider: Optional[str] = None,
    payment_type: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Payment], int]:
    """Newest-first page of a user's payments and the total match count."""
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")

    filters = [Payment.user_id == user_id]
    if status:
        filters.append(Payment.status == status)
    if provider:
        filters.append(Payment.provider == provider)
    if payment_type:
        filters.append(Payment.type == payment_type)
    if start_date:
        filters.append(Payment.created_at >= start_date)
    if end_date:
        filters.append(Payment.created_at <= end_date)

    total = (await session.execute(select(func.count()).select_from(Payment).where(*filters))).scalar_one()
    result = await session.execute(
        select(Payment)
        .where(*filters)
        .order_by(Payment.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def payment_stats(
    session: AsyncSession,
    period: str = "30d",
    user_id: Optional[str] = None,
) -> list[dict]:
    """Completed and processing volume grouped by provider and type."""
    filters = [
        Payment.created_at >= period_start(period),
        Payment.status.in_(DAILY_LIMIT_STATUSES),
    ]
    if user_id:
        filters.append(Payment.user_id == user_id)

    result = await session.execute(
        select(
            Payment.provider,
            Payment.type,
            func.count(),
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(Payment.fee_amount), 0),
        )
        .where(*filters)
        .group_by(Payment.provider, Payment.type)
        .order_by(Payment.provider, Payment.type)
    )
    return [
        {
            "provider": provider,
            "type": payment_type,
            "count": count,
            "total_amount": Decimal(str(total_amount)),
            "total_fees": Decimal(str(total_fees)),
        }
        for provider, payment_type, count, total_amount, total_fees in result.all()
    ]


async def provider_stats(session: AsyncSession, provider: str, period: str = "30d") -> list[dict]:
    """All of a provider's payments in the period, grouped by status and type."""
    result = await session.execute(
        select(
            Payment.status,
            Payment.type,
            func.count(),
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(Payment.fee_amount), 0),
        )
        .where(Payment.provider == provider, Payment.created_at >= period_start(period))
        .group_by(Payment.status, Payment.type)
        .order_by(Payment.status, Payment.type)
    )
    return [
        {
            "status": status,
            "type": payment_type,
            "count": count,
            "total_amount": Decimal(str(total_amount)),
            "total_fees": Decimal(str(total_fees)),
        }
        for status, payment_type, count, total_amount, total_fees in result.all()
    ]
