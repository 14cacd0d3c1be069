"""
Transactional outbox dispatcher.

Payment events are written in the same transaction as the status change
that caused them (see ``engine.state_machine``). This module delivers the
unpublished ones and stamps them; a failed delivery is recorded on the row
and picked up again on the next sweep.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_integration.engine.retry import with_retry
from payment_integration.errors import ProviderRequestError
from payment_integration.events.publisher import EventPublisher
from payment_integration.models.payment import PaymentEvent

logger = logging.getLogger("payment_integration.outbox")


async def dispatch_pending_events(
    session_factory: async_sessionmaker[AsyncSession],
    publisher: EventPublisher,
    limit: int = 100,
    max_retries: int = 2,
    base_delay: float = 0.5,
) -> dict[str, int]:
    """
    Publish every unpublished payment event, oldest first.

    Returns:
        Counts of published and failed events.
    """
    published = 0
    failed = 0

    async with session_factory() as session:
        result = await session.execute(
            select(PaymentEvent)
            .where(PaymentEvent.published_at.is_(None))
            .order_by(PaymentEvent.id)
            .limit(limit)
        )
        events = result.scalars().all()

        for event in events:
            event.attempts = (event.attempts or 0) + 1
            try:
                await with_retry(
                    publisher.publish,
                    event.event_type,
                    event.payload,
                    event.idempotency_key,
                    max_retries=max_retries,
                    base_delay=base_delay,
                )
            except ProviderRequestError as e:
                event.last_error = str(e)
                failed += 1
                logger.warning("Event %s not published (attempt %d): %s",
                               event.idempotency_key, event.attempts, e)
            else:
                event.published_at = datetime.now(timezone.utc)
                event.last_error = None
                published += 1
            await session.commit()

    if published or failed:
        logger.info("Outbox dispatch: %d published, %d failed", published, failed)
    return {"published": published, "failed": failed}


async def publish_committed(
    session: AsyncSession,
    publisher: EventPublisher,
    events: Iterable[Optional[PaymentEvent]],
) -> None:
    """
    Publish events whose transition has just committed. One attempt each;
    failures stay in the outbox for the dispatcher.
    """
    pending = [e for e in events if e is not None and e.published_at is None]
    if not pending:
        return

    for event in pending:
        event.attempts = (event.attempts or 0) + 1
        try:
            await publisher.publish(event.event_type, event.payload, event.idempotency_key)
        except ProviderRequestError as e:
            event.last_error = str(e)
            logger.warning("Event %s left in outbox: %s", event.idempotency_key, e)
        else:
            event.published_at = datetime.now(timezone.utc)
    await session.commit()
