"""
Reconciliation engine: converge payments whose webhooks never arrived.

Periodically picks every ``pending``/``processing`` payment that has a rail
transaction id and has not been looked at for longer than the staleness
threshold, polls the rail for its status and feeds the answer through the
same guarded transition webhooks use. A webhook and a poll for the same
payment can therefore race freely: whichever lands second is a no-op.

Polls run concurrently, bounded per provider by a semaphore, so a slow rail
only delays its own payments.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_integration.audit.logger import log_event
from payment_integration.engine.retry import with_retry
from payment_integration.engine.state_machine import transition_payment
from payment_integration.errors import NotFoundError, ProviderRequestError, UnmappedStatusError
from payment_integration.events.outbox import publish_committed
from payment_integration.events.publisher import EventPublisher
from payment_integration.models.enums import PaymentStatus
from payment_integration.models.payment import Payment
from payment_integration.providers.registry import ProviderRegistry

logger = logging.getLogger("payment_integration.reconciliation")

OPEN_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


async def find_stale_payments(
    session: AsyncSession,
    stale_after_seconds: int,
    limit: int = 200,
    now: Optional[datetime] = None,
) -> list[tuple[str, str]]:
    """(payment_id, provider) pairs due for a status poll, oldest first."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=stale_after_seconds)
    last_seen = func.coalesce(Payment.last_reconciled_at, Payment.updated_at)
    result = await session.execute(
        select(Payment.payment_id, Payment.provider)
        .where(
            Payment.status.in_(OPEN_STATUSES),
            Payment.provider_transaction_id.is_not(None),
            last_seen < cutoff,
        )
        .order_by(last_seen)
        .limit(limit)
    )
    return [(row.payment_id, row.provider) for row in result.all()]


async def reconcile_payment(
    session: AsyncSession,
    registry: ProviderRegistry,
    publisher: EventPublisher,
    payment_id: str,
    max_retries: int = 2,
    base_delay: float = 0.5,
) -> str:
    """
    Poll the rail for one payment and apply what it reports.

    Returns:
        "applied", "same_status", "illegal", "lost_race", "unmapped" or "skipped".

    Raises:
        NotFoundError: Unknown payment.
        ProviderRequestError: The rail could not be reached.
    """
    payment = await session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment not found: {payment_id}")
    if payment.status not in OPEN_STATUSES or not payment.provider_transaction_id:
        return "skipped"

    adapter = registry.get_adapter(payment.provider)
    now = datetime.now(timezone.utc)
    try:
        result = await with_retry(
            adapter.check_status,
            payment.provider_transaction_id,
            max_retries=max_retries,
            base_delay=base_delay,
        )
    except UnmappedStatusError as e:
        logger.warning("Payment %s: %s; leaving it for a later sweep", payment_id[:8], e)
        await _stamp(session, payment_id, now)
        await log_event(session, "reconciliation_unmapped_status", payment_id=payment_id, details={
            "provider": adapter.name,
            "native_status": e.native_status,
        })
        await session.commit()
        return "unmapped"

    await _stamp(session, payment_id, now)
    outcome = await transition_payment(
        session,
        payment_id,
        result.status,
        source="reconciliation",
        failure_reason=result.failure_reason,
    )
    await session.commit()
    await publish_committed(session, publisher, [outcome.event])
    return outcome.reason


async def _stamp(session: AsyncSession, payment_id: str, when: datetime) -> None:
    await session.execute(
        update(Payment)
        .where(Payment.payment_id == payment_id)
        .values(last_reconciled_at=when)
        .execution_options(synchronize_session=False)
    )


async def run_reconciliation(
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry,
    publisher: EventPublisher,
    stale_after_seconds: int = 900,
    concurrency_per_provider: int = 5,
    limit: int = 200,
    max_retries: int = 2,
    base_delay: float = 0.5,
) -> dict[str, int]:
    """
    One reconciliation sweep over every stale open payment.

    Returns:
        Outcome counts, e.g. {"checked": 4, "applied": 2, "same_status": 1, "error": 1}.
    """
    async with session_factory() as session:
        due = await find_stale_payments(session, stale_after_seconds, limit)

    if not due:
        return {"checked": 0}

    semaphores = {
        provider: asyncio.Semaphore(concurrency_per_provider)
        for provider in {provider for _, provider in due}
    }

    async def _one(payment_id: str, provider: str) -> str:
        async with semaphores[provider]:
            async with session_factory() as session:
                try:
                    return await reconcile_payment(
                        session, registry, publisher, payment_id,
                        max_retries=max_retries, base_delay=base_delay,
                    )
                except (ProviderRequestError, NotFoundError) as e:
                    logger.warning("Reconciliation of %s via %s failed: %s", payment_id[:8], provider, e)
                    return "error"

    outcomes = await asyncio.gather(*(_one(pid, provider) for pid, provider in due))
    counts = Counter(outcomes)
    summary = {"checked": len(due), **counts}

    logger.info(
        "Reconciliation sweep: %d checked, %d applied, %d errors",
        len(due), counts.get("applied", 0), counts.get("error", 0),
    )
    return summary
