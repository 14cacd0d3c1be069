"""
Webhook ingestion, processing and retry coordination.

Ingestion (on the HTTP request path) does exactly three things: verify the
signature, persist the raw notification as ``received``, and return. All
interpretation happens later in ``process_webhook``, run by the worker pool:

  1. Claim the webhook (received -> processing, conditional update)
  2. De-duplicate: same (provider, event_id) already processed -> ignored
  3. Interpret the payload with the provider's adapter
  4. Correlate to a payment (our payment id first, rail transaction id second)
  5. Apply the guarded status transition
  6. Mark processed, or failed with a reason (retryable later)

Failures in steps 2-6 are recorded on the webhook and never reach the
provider, which was acknowledged at ingestion.
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_integration.audit.logger import log_event
from payment_integration.engine.payments import period_start
from payment_integration.engine.state_machine import (
    attach_provider_transaction_id,
    transition_payment,
)
from payment_integration.errors import (
    NotFoundError,
    PaymentIntegrationError,
    SignatureVerificationError,
    ValidationError,
)
from payment_integration.events.outbox import publish_committed
from payment_integration.events.publisher import EventPublisher
from payment_integration.models.enums import WebhookStatus
from payment_integration.models.payment import Payment, Webhook
from payment_integration.providers.base import (
    PaymentAdapter,
    WebhookEnvelope,
    WebhookInterpretation,
    load_json,
)
from payment_integration.providers.registry import ProviderRegistry

logger = logging.getLogger("payment_integration.webhooks")

UNMATCHED = "unmatched"


# ── Ingestion ────────────────────────────────────────────────────────────


async def ingest_webhook(
    session: AsyncSession,
    adapter: PaymentAdapter,
    raw_body: bytes,
    signature: Optional[str],
    max_retries: int = 3,
) -> Webhook:
    """
    Verify and durably record one inbound notification.

    Raises:
        SignatureVerificationError: Nothing is persisted.
    """
    if not adapter.verify_signature(raw_body, signature):
        logger.warning("SECURITY | rejected %s webhook with invalid signature (%d bytes)",
                       adapter.name, len(raw_body))
        raise SignatureVerificationError(f"Invalid {adapter.name} webhook signature")

    try:
        envelope = adapter.parse_envelope(raw_body)
    except (ValueError, KeyError, TypeError):
        # Still recorded; processing will fail it with the parse error.
        envelope = WebhookEnvelope(
            event_id=f"sha256:{hashlib.sha256(raw_body).hexdigest()}",
            event_type="unknown",
        )

    webhook = Webhook(
        provider=adapter.name,
        event_id=envelope.event_id,
        event_type=envelope.event_type,
        payload=raw_body.decode("utf-8", errors="replace"),
        signature=signature,
        provider_transaction_id=envelope.provider_transaction_id,
        status=WebhookStatus.RECEIVED.value,
        max_retries=max_retries,
    )
    session.add(webhook)
    await session.flush()

    await log_event(session, "webhook_received", webhook_id=webhook.webhook_id, details={
        "provider": adapter.name,
        "event_id": envelope.event_id,
        "event_type": envelope.event_type,
    })
    await session.commit()
    return webhook


# ── Processing ───────────────────────────────────────────────────────────


async def process_webhook(
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry,
    publisher: EventPublisher,
    webhook_id: str,
) -> Optional[str]:
    """
    Process one received webhook end to end.

    Returns:
        The webhook's final status, or None if it was not in ``received``
        (another worker has it, or it is already done).
    """
    async with session_factory() as session:
        claimed = await session.execute(
            update(Webhook)
            .where(Webhook.webhook_id == webhook_id, Webhook.status == WebhookStatus.RECEIVED.value)
            .values(status=WebhookStatus.PROCESSING.value, updated_at=datetime.now(timezone.utc))
        )
        if claimed.rowcount == 0:
            await session.rollback()
            logger.info("Webhook %s not in received state; skipping", webhook_id[:8])
            return None
        await session.commit()

        webhook = await session.get(Webhook, webhook_id)
        try:
            status, reason, payment_id, events = await _handle(session, registry, webhook)
        except Exception as e:
            await session.rollback()
            logger.exception("Webhook %s processing failed", webhook_id[:8])
            status, reason, payment_id, events = WebhookStatus.FAILED, _describe(e), None, []

        values: dict[str, Any] = {
            "status": status.value,
            "failure_reason": reason,
            "updated_at": datetime.now(timezone.utc),
        }
        if payment_id:
            values["payment_id"] = payment_id
        if status == WebhookStatus.PROCESSED:
            values["processed_at"] = datetime.now(timezone.utc)

        await session.execute(update(Webhook).where(Webhook.webhook_id == webhook_id).values(**values))
        await log_event(session, f"webhook_{status.value}", payment_id=payment_id, webhook_id=webhook_id,
                        details={"reason": reason} if reason else None)
        await session.commit()
        await publish_committed(session, publisher, events)

        if status == WebhookStatus.FAILED:
            logger.warning("Webhook %s failed: %s", webhook_id[:8], reason)
        return status.value


async def _handle(
    session: AsyncSession,
    registry: ProviderRegistry,
    webhook: Webhook,
) -> tuple[WebhookStatus, Optional[str], Optional[str], list]:
    """Returns (webhook status, failure/ignore reason, payment id, outbox events)."""
    duplicate = await session.execute(
        select(Webhook.webhook_id).where(
            Webhook.provider == webhook.provider,
            Webhook.event_id == webhook.event_id,
            Webhook.status == WebhookStatus.PROCESSED.value,
            Webhook.webhook_id != webhook.webhook_id,
        ).limit(1)
    )
    original = duplicate.scalar_one_or_none()
    if original:
        return WebhookStatus.IGNORED, f"duplicate of {original}", None, []

    adapter = registry.get_adapter(webhook.provider)
    interpretation = adapter.interpret_webhook(load_json(webhook.payload.encode("utf-8")))

    if interpretation.status is None:
        return WebhookStatus.IGNORED, f"unhandled event type: {webhook.event_type}", None, []

    payment = await _correlate(session, webhook.provider, interpretation)
    if payment is None:
        return WebhookStatus.FAILED, UNMATCHED, None, []

    if interpretation.provider_transaction_id:
        await attach_provider_transaction_id(
            session, payment.payment_id, interpretation.provider_transaction_id
        )

    extra = {k: v for k, v in interpretation.metadata.items() if v is not None}
    payment.webhook_received = True
    if extra:
        payment.metadata_ = {**(payment.metadata_ or {}), **extra}

    outcome = await transition_payment(
        session,
        payment.payment_id,
        interpretation.status,
        source="webhook",
        failure_reason=interpretation.failure_reason,
        webhook_id=webhook.webhook_id,
    )
    return WebhookStatus.PROCESSED, None, payment.payment_id, [outcome.event]


async def _correlate(
    session: AsyncSession,
    provider: str,
    interpretation: WebhookInterpretation,
) -> Optional[Payment]:
    if interpretation.payment_id:
        payment = await session.get(Payment, interpretation.payment_id)
        if payment is not None and payment.provider == provider:
            return payment

    if interpretation.provider_transaction_id:
        result = await session.execute(
            select(Payment).where(
                Payment.provider == provider,
                Payment.provider_transaction_id == interpretation.provider_transaction_id,
            )
        )
        return result.scalars().first()

    return None


def _describe(error: Exception) -> str:
    if isinstance(error, PaymentIntegrationError):
        return error.message
    if isinstance(error, ValueError):
        return f"unparseable payload: {error}"
    return f"{type(error).__name__}: {error}"


# ── Retry coordination ───────────────────────────────────────────────────


async def get_webhook(session: AsyncSession, webhook_id: str) -> Webhook:
    webhook = await session.get(Webhook, webhook_id)
    if webhook is None:
        raise NotFoundError(f"Webhook not found: {webhook_id}")
    return webhook


async def retry_webhook(session: AsyncSession, webhook_id: str, force: bool = False) -> Webhook:
    """
    Reset a failed webhook to ``received`` so it can be processed again.

    The signature is not re-verified. The caller dispatches processing.

    Args:
        force: Manual override of the retry ceiling.

    Raises:
        NotFoundError: Unknown webhook.
        ValidationError: Not failed, or retries exhausted without ``force``.
    """
    webhook = await get_webhook(session, webhook_id)
    if webhook.status != WebhookStatus.FAILED.value:
        raise ValidationError(f"Only failed webhooks can be retried (status: {webhook.status})")
    if webhook.retry_count >= webhook.max_retries and not force:
        raise ValidationError(
            f"Maximum retry attempts exceeded ({webhook.retry_count}/{webhook.max_retries})"
        )

    result = await session.execute(
        update(Webhook)
        .where(Webhook.webhook_id == webhook_id, Webhook.status == WebhookStatus.FAILED.value)
        .values(
            status=WebhookStatus.RECEIVED.value,
            retry_count=Webhook.retry_count + 1,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise ValidationError(f"Webhook {webhook_id} changed state; not retried")

    await log_event(session, "webhook_retry", webhook_id=webhook_id, details={
        "retry_count": webhook.retry_count + 1,
        "max_retries": webhook.max_retries,
        "forced": force,
    })
    await session.commit()
    await session.refresh(webhook)
    return webhook


async def retryable_webhook_ids(session: AsyncSession, limit: int = 100) -> list[str]:
    result = await session.execute(
        select(Webhook.webhook_id)
        .where(
            Webhook.status == WebhookStatus.FAILED.value,
            Webhook.retry_count < Webhook.max_retries,
        )
        .order_by(Webhook.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def retry_failed_webhooks(
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry,
    publisher: EventPublisher,
    limit: int = 100,
) -> list[dict]:
    """Reset and reprocess every failed webhook that still has retries left."""
    async with session_factory() as session:
        ids = await retryable_webhook_ids(session, limit)

    results = []
    for webhook_id in ids:
        async with session_factory() as session:
            try:
                webhook = await retry_webhook(session, webhook_id)
            except PaymentIntegrationError as e:
                results.append({"webhook_id": webhook_id, "success": False, "error": e.message})
                continue
        status = await process_webhook(session_factory, registry, publisher, webhook_id)
        results.append({
            "webhook_id": webhook_id,
            "success": status == WebhookStatus.PROCESSED.value,
            "status": status,
            "retry_count": webhook.retry_count,
        })

    if results:
        logger.info("Retried %d failed webhooks", len(results))
    return results


async def recover_stalled_webhooks(session: AsyncSession, stalled_after_seconds: int = 300) -> list[str]:
    """
    Find webhooks that were recorded but never finished processing.

    A worker that died mid-processing leaves its webhook in ``processing``;
    those older than the threshold are released back to ``received``.
    Returns the ids of every ``received`` webhook older than the threshold,
    ready to be enqueued again.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stalled_after_seconds)
    result = await session.execute(
        select(Webhook.webhook_id)
        .where(
            Webhook.status.in_([WebhookStatus.RECEIVED.value, WebhookStatus.PROCESSING.value]),
            Webhook.updated_at < cutoff,
        )
        .order_by(Webhook.created_at)
    )
    stalled = list(result.scalars().all())
    if not stalled:
        return []

    await session.execute(
        update(Webhook)
        .where(Webhook.webhook_id.in_(stalled), Webhook.status == WebhookStatus.PROCESSING.value)
        .values(status=WebhookStatus.RECEIVED.value, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.warning("Requeueing %d stalled webhooks", len(stalled))
    return stalled


async def list_exhausted_webhooks(session: AsyncSession, limit: int = 100) -> list[Webhook]:
    """Failed webhooks that need manual intervention."""
    result = await session.execute(
        select(Webhook)
        .where(
            Webhook.status == WebhookStatus.FAILED.value,
            Webhook.retry_count >= Webhook.max_retries,
        )
        .order_by(Webhook.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_webhooks(
    session: AsyncSession,
    provider: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Webhook], int]:
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")

    filters = []
    if provider:
        filters.append(Webhook.provider == provider)
    if status:
        filters.append(Webhook.status == status)

    total = (await session.execute(select(func.count()).select_from(Webhook).where(*filters))).scalar_one()
    result = await session.execute(
        select(Webhook)
        .where(*filters)
        .order_by(Webhook.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def webhook_stats(
    session: AsyncSession,
    provider: Optional[str] = None,
    period: str = "30d",
) -> list[dict]:
    filters = [Webhook.created_at >= period_start(period)]
    if provider:
        filters.append(Webhook.provider == provider)

    result = await session.execute(
        select(Webhook.provider, Webhook.status, func.count(), func.avg(Webhook.retry_count))
        .where(*filters)
        .group_by(Webhook.provider, Webhook.status)
        .order_by(Webhook.provider, Webhook.status)
    )
    return [
        {
            "provider": row_provider,
            "status": row_status,
            "count": count,
            "avg_retry_count": float(avg_retries or 0),
        }
        for row_provider, row_status, count, avg_retries in result.all()
    ]


async def cleanup_old_webhooks(session: AsyncSession, days: int = 90) -> int:
    """Delete processed/ignored webhooks older than ``days``. Returns the count."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    result = await session.execute(
        delete(Webhook).where(
            Webhook.created_at < cutoff,
            Webhook.status.in_([WebhookStatus.PROCESSED.value, WebhookStatus.IGNORED.value]),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info("Cleaned up %d webhooks older than %d days", result.rowcount, days)
    return result.rowcount
