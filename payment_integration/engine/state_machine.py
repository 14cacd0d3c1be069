"""
Payment lifecycle state machine.

Legal edges:

    pending ──> processing ──> completed ──> refunded
                    │
                    ├──> failed
                    └──> cancelled

``failed``, ``cancelled`` and ``refunded`` are terminal.

Every status write goes through ``transition_payment``, which applies the
change as a conditional update (``WHERE status = <status we read>``). When
a webhook and a reconciliation poll race on the same payment, exactly one
update matches a row; the other sees zero rows and becomes a recorded
no-op. In the same transaction the winner writes the audit entry and, for
completed/failed/refunded, the outbox event, so a transition is published
exactly once.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payment_integration.audit.logger import log_event
from payment_integration.errors import (
    InvalidTransitionError,
    NotFoundError,
    ProviderTransactionMismatchError,
)
from payment_integration.models.enums import EventType, PaymentStatus
from payment_integration.models.payment import Payment, PaymentEvent

logger = logging.getLogger("payment_integration.state_machine")

LEGAL_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING}),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in LEGAL_TRANSITIONS.items() if not targets)

# Statuses that notify the ledger.
PUBLISHED_EVENTS = {
    PaymentStatus.COMPLETED: EventType.PAYMENT_COMPLETED,
    PaymentStatus.FAILED: EventType.PAYMENT_FAILED,
    PaymentStatus.REFUNDED: EventType.PAYMENT_REFUNDED,
}


def can_transition(current: PaymentStatus, proposed: PaymentStatus) -> bool:
    return proposed in LEGAL_TRANSITIONS.get(PaymentStatus(current), frozenset())


@dataclass
class TransitionOutcome:
    """What happened to one proposed status change."""

    payment_id: str
    previous: PaymentStatus
    proposed: PaymentStatus
    applied: bool
    reason: str  # "applied", "same_status", "illegal", "lost_race"
    event: Optional[PaymentEvent] = None

    @property
    def current(self) -> PaymentStatus:
        return self.proposed if self.applied else self.previous


async def transition_payment(
    session: AsyncSession,
    payment_id: str,
    proposed: PaymentStatus,
    *,
    source: str,
    failure_reason: Optional[str] = None,
    webhook_id: Optional[str] = None,
    strict: bool = False,
) -> TransitionOutcome:
    """
    Apply a proposed status change under the conditional-write guard.

    The caller owns the transaction: nothing is committed here, and the
    status change, audit entry and outbox event commit together.

    Args:
        session: Database session.
        payment_id: Payment to move.
        proposed: Target canonical status.
        source: Who proposed it ("api", "initiation", "webhook", "reconciliation").
        failure_reason: Stored on the payment for failed/cancelled.
        webhook_id: Triggering webhook, if any (audit only).
        strict: Raise InvalidTransitionError for an illegal edge instead of
            recording a no-op. Used for user-initiated actions.

    Raises:
        NotFoundError: Unknown payment.
        InvalidTransitionError: Illegal edge and ``strict`` is set.
    """
    proposed = PaymentStatus(proposed)
    result = await session.execute(select(Payment.status).where(Payment.payment_id == payment_id))
    read = result.scalar_one_or_none()
    if read is None:
        raise NotFoundError(f"Payment not found: {payment_id}")
    current = PaymentStatus(read)

    audit = {"from": current.value, "to": proposed.value, "source": source}

    if current == proposed:
        await log_event(session, "transition_noop", payment_id=payment_id, webhook_id=webhook_id,
                        details={**audit, "reason": "same_status"})
        return TransitionOutcome(payment_id, current, proposed, applied=False, reason="same_status")

    if not can_transition(current, proposed):
        if strict:
            raise InvalidTransitionError(current.value, proposed.value)
        await log_event(session, "transition_noop", payment_id=payment_id, webhook_id=webhook_id,
                        details={**audit, "reason": "illegal"})
        return TransitionOutcome(payment_id, current, proposed, applied=False, reason="illegal")

    now = datetime.now(timezone.utc)
    values = {"status": proposed.value, "updated_at": now}
    if proposed == PaymentStatus.COMPLETED:
        values["processed_at"] = now
    elif proposed == PaymentStatus.REFUNDED:
        values["refunded_at"] = now
    elif proposed in (PaymentStatus.FAILED, PaymentStatus.CANCELLED) and failure_reason:
        values["failure_reason"] = failure_reason

    result = await session.execute(
        update(Payment)
        .where(Payment.payment_id == payment_id, Payment.status == current.value)
        .values(**values)
    )

    if result.rowcount == 0:
        # Someone else moved the payment between our read and our write.
        await log_event(session, "transition_noop", payment_id=payment_id, webhook_id=webhook_id,
                        details={**audit, "reason": "lost_race"})
        return TransitionOutcome(payment_id, current, proposed, applied=False, reason="lost_race")

    if failure_reason:
        audit["failure_reason"] = failure_reason
    await log_event(session, "status_changed", payment_id=payment_id, webhook_id=webhook_id, details=audit)

    event = None
    event_type = PUBLISHED_EVENTS.get(proposed)
    if event_type is not None:
        event = await _enqueue_event(session, payment_id, proposed, event_type)

    logger.info("Payment %s: %s -> %s (%s)", payment_id[:8], current.value, proposed.value, source)
    return TransitionOutcome(payment_id, current, proposed, applied=True, reason="applied", event=event)


async def _enqueue_event(
    session: AsyncSession,
    payment_id: str,
    status: PaymentStatus,
    event_type: EventType,
) -> PaymentEvent:
    payment = (await session.execute(
        select(Payment).where(Payment.payment_id == payment_id)
    )).scalar_one()

    event = PaymentEvent(
        payment_id=payment_id,
        event_type=event_type.value,
        idempotency_key=f"{payment_id}:{status.value}",
        payload={
            "payment_id": payment_id,
            "user_id": payment.user_id,
            "type": payment.type,
            "provider": payment.provider,
            "provider_transaction_id": payment.provider_transaction_id,
            "amount": str(payment.amount),
            "fee_amount": str(payment.fee_amount),
            "currency": payment.currency,
            "status": status.value,
            "failure_reason": payment.failure_reason,
        },
    )
    session.add(event)
    await session.flush()
    return event


async def attach_provider_transaction_id(
    session: AsyncSession,
    payment_id: str,
    provider_transaction_id: str,
) -> None:
    """
    Record the rail's transaction id on a payment. Write-once.

    Raises:
        ProviderTransactionMismatchError: The payment already carries a
            different id.
    """
    result = await session.execute(
        update(Payment)
        .where(
            Payment.payment_id == payment_id,
            or_(
                Payment.provider_transaction_id.is_(None),
                Payment.provider_transaction_id == provider_transaction_id,
            ),
        )
        .values(provider_transaction_id=provider_transaction_id)
    )
    if result.rowcount == 0:
        existing = (await session.execute(
            select(Payment.provider_transaction_id).where(Payment.payment_id == payment_id)
        )).scalar_one_or_none()
        if existing is None:
            raise NotFoundError(f"Payment not found: {payment_id}")
        raise ProviderTransactionMismatchError(
            f"Payment {payment_id} already has provider transaction {existing}, "
            f"refusing {provider_transaction_id}"
        )
