"""Tests for webhook ingestion, processing and retry coordination."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from conftest import (
    AFRIMONEY_WEBHOOK_SECRET,
    ORANGE_WEBHOOK_SECRET,
    add_payment,
    body_signature,
    stripe_event,
    stripe_signature,
)
from payment_integration.engine.webhooks import (
    cleanup_old_webhooks,
    ingest_webhook,
    list_exhausted_webhooks,
    list_webhooks,
    process_webhook,
    recover_stalled_webhooks,
    retry_failed_webhooks,
    retry_webhook,
    webhook_stats,
)
from payment_integration.engine.worker import WebhookWorkerPool
from payment_integration.errors import SignatureVerificationError, ValidationError
from payment_integration.models.payment import AuditLog, Payment, Webhook


async def _deliver(session, adapter, body, signature, max_retries=3):
    return await ingest_webhook(session, adapter, body, signature, max_retries=max_retries)


async def _deliver_stripe(session, registry, body):
    return await _deliver(session, registry["stripe"], body, stripe_signature(body))


async def _webhook(session_factory, webhook_id):
    async with session_factory() as session:
        return await session.get(Webhook, webhook_id)


async def _payment(session_factory, payment_id):
    async with session_factory() as session:
        return await session.get(Payment, payment_id)


async def _count(session, model):
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# ── Ingestion ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_invalid_signature_records_nothing(db_session, registry):
    body = stripe_event("evt_1", "payment_intent.succeeded", "pi_1", "pay-1")

    with pytest.raises(SignatureVerificationError):
        await _deliver(db_session, registry["stripe"], body, stripe_signature(body, secret="whsec_forged"))

    assert await _count(db_session, Webhook) == 0
    assert await _count(db_session, AuditLog) == 0


@pytest.mark.asyncio
async def test_ingest_records_raw_notification(db_session, registry):
    body = stripe_event("evt_1", "payment_intent.succeeded", "pi_1", "pay-1")

    webhook = await _deliver_stripe(db_session, registry, body)

    assert webhook.status == "received"
    assert webhook.provider == "stripe"
    assert webhook.event_id == "evt_1"
    assert webhook.event_type == "payment_intent.succeeded"
    assert webhook.provider_transaction_id == "pi_1"
    assert webhook.payload == body.decode("utf-8")
    assert webhook.max_retries == 3


@pytest.mark.asyncio
async def test_unparseable_body_is_recorded_then_failed(db_session, session_factory, registry, publisher):
    body = b"not json at all"
    webhook = await _deliver_stripe(db_session, registry, body)
    assert webhook.event_id.startswith("sha256:")
    assert webhook.event_type == "unknown"

    status = await process_webhook(session_factory, registry, publisher, webhook.webhook_id)

    assert status == "failed"
    stored = await _webhook(session_factory, webhook.webhook_id)
    assert stored.failure_reason.startswith("unparseable payload")


# ── Processing ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_completion_webhook_settles_payment(db_session, session_factory, registry, publisher):
    payment = await add_payment(db_session, status="processing", provider_transaction_id="pi_1")
    body = stripe_event("evt_1", "payment_intent.succeeded", "pi_1", payment.payment_id)
    webhook = await _deliver_stripe(db_session, registry, body)

    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) == "processed"

    settled = await _payment(session_factory, payment.payment_id)
    assert settled.status == "completed"
    assert settled.webhook_received
    stored = await _webhook(session_factory, webhook.webhook_id)
    assert stored.payment_id == payment.payment_id
    assert stored.processed_at is not None
    assert [e.idempotency_key for e in publisher.events] == [f"{payment.payment_id}:completed"]


@pytest.mark.asyncio
async def test_redelivered_event_is_ignored(db_session, session_factory, registry, publisher):
    payment = await add_payment(db_session, status="processing", provider_transaction_id="pi_1")
    body = stripe_event("evt_1", "payment_intent.succeeded", "pi_1", payment.payment_id)

    first = await _deliver_stripe(db_session, registry, body)
    await process_webhook(session_factory, registry, publisher, first.webhook_id)
    second = await _deliver_stripe(db_session, registry, body)
    status = await process_webhook(session_factory, registry, publisher, second.webhook_id)

    assert status == "ignored"
    stored = await _webhook(session_factory, second.webhook_id)
    assert stored.failure_reason == f"duplicate of {first.webhook_id}"
    assert len(publisher.events) == 1


@pytest.mark.asyncio
async def test_already_handled_webhook_is_not_reprocessed(db_session, session_factory, registry, publisher):
    payment = await add_payment(db_session, status="processing", provider_transaction_id="pi_1")
    webhook = await _deliver_stripe(
        db_session, registry, stripe_event("evt_1", "payment_intent.succeeded", "pi_1", payment.payment_id)
    )

    await process_webhook(session_factory, registry, publisher, webhook.webhook_id)
    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) is None


@pytest.mark.asyncio
async def test_correlates_by_transaction_id_without_payment_id(db_session, session_factory, registry, publisher):
    payment = await add_payment(db_session, status="processing", provider_transaction_id="pi_7")
    webhook = await _deliver_stripe(db_session, registry, stripe_event(
        "evt_7", "payment_intent.payment_failed", "pi_7",
        last_payment_error={"message": "Card declined"},
    ))

    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) == "processed"

    failed = await _payment(session_factory, payment.payment_id)
    assert failed.status == "failed"
    assert failed.failure_reason == "Card declined"
    assert publisher.events[0].event_type == "payment.failed"


@pytest.mark.asyncio
async def test_unmatched_webhook_fails(db_session, session_factory, registry, publisher):
    webhook = await _deliver_stripe(
        db_session, registry, stripe_event("evt_1", "payment_intent.succeeded", "pi_unknown", "no-such-payment")
    )

    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) == "failed"
    assert (await _webhook(session_factory, webhook.webhook_id)).failure_reason == "unmatched"


@pytest.mark.asyncio
async def test_payment_of_another_provider_is_not_matched(db_session, session_factory, registry, publisher):
    payment = await add_payment(db_session, status="processing", provider="orange_money",
                                currency="XOF", provider_transaction_id="ptok_1")
    webhook = await _deliver_stripe(
        db_session, registry, stripe_event("evt_1", "payment_intent.succeeded", "pi_1", payment.payment_id)
    )

    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) == "failed"
    assert (await _payment(session_factory, payment.payment_id)).status == "processing"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(db_session, session_factory, registry, publisher):
    webhook = await _deliver_stripe(db_session, registry, stripe_event("evt_1", "customer.created", "cus_1"))

    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) == "ignored"
    stored = await _webhook(session_factory, webhook.webhook_id)
    assert stored.failure_reason == "unhandled event type: customer.created"


@pytest.mark.asyncio
async def test_unknown_native_status_fails_webhook(db_session, session_factory, registry, publisher):
    payment = await add_payment(db_session, status="processing", provider="orange_money",
                                currency="XOF", provider_transaction_id="ptok_1")
    body = json.dumps({"status": "ON_HOLD", "pay_token": "ptok_1",
                       "reference": f"PAY-{payment.payment_id}"}).encode("utf-8")
    webhook = await _deliver(db_session, registry["orange_money"], body, body_signature(body, ORANGE_WEBHOOK_SECRET))

    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) == "failed"
    stored = await _webhook(session_factory, webhook.webhook_id)
    assert "ON_HOLD" in stored.failure_reason
    assert (await _payment(session_factory, payment.payment_id)).status == "processing"


@pytest.mark.asyncio
async def test_late_webhook_for_settled_payment_is_noop(db_session, session_factory, registry, publisher):
    payment = await add_payment(db_session, status="completed", provider_transaction_id="pi_1")
    webhook = await _deliver_stripe(db_session, registry, stripe_event(
        "evt_late", "payment_intent.payment_failed", "pi_1", payment.payment_id,
    ))

    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) == "processed"
    assert (await _payment(session_factory, payment.payment_id)).status == "completed"
    assert publisher.events == []


@pytest.mark.asyncio
async def test_mismatched_transaction_id_fails_webhook(db_session, session_factory, registry, publisher):
    payment = await add_payment(db_session, status="processing", provider_transaction_id="pi_1")
    webhook = await _deliver_stripe(
        db_session, registry, stripe_event("evt_1", "payment_intent.succeeded", "pi_other", payment.payment_id)
    )

    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) == "failed"
    assert "pi_other" in (await _webhook(session_factory, webhook.webhook_id)).failure_reason
    assert (await _payment(session_factory, payment.payment_id)).status == "processing"


@pytest.mark.asyncio
async def test_afrimoney_success_webhook(db_session, session_factory, registry, publisher):
    payment = await add_payment(db_session, status="processing", provider="afrimoney", currency="GHS")
    body = json.dumps({
        "referenceId": payment.payment_id,
        "externalId": payment.payment_id,
        "status": "SUCCESSFUL",
        "financialTransactionId": "FT99",
    }).encode("utf-8")
    webhook = await _deliver(db_session, registry["afrimoney"], body, body_signature(body, AFRIMONEY_WEBHOOK_SECRET))

    assert await process_webhook(session_factory, registry, publisher, webhook.webhook_id) == "processed"

    settled = await _payment(session_factory, payment.payment_id)
    assert settled.status == "completed"
    assert settled.provider_transaction_id == payment.payment_id
    assert settled.metadata_["financial_transaction_id"] == "FT99"


# ── Retries ──────────────────────────────────────────────────────────────


async def _failed_webhook(db_session, session_factory, registry, publisher, max_retries=3):
    body = stripe_event("evt_early", "payment_intent.succeeded", "pi_1", "pay-later")
    webhook = await _deliver(db_session, registry["stripe"], body, stripe_signature(body), max_retries=max_retries)
    await process_webhook(session_factory, registry, publisher, webhook.webhook_id)
    return webhook


@pytest.mark.asyncio
async def test_retry_resets_failed_webhook(db_session, session_factory, registry, publisher):
    webhook = await _failed_webhook(db_session, session_factory, registry, publisher)

    async with session_factory() as session:
        retried = await retry_webhook(session, webhook.webhook_id)

    assert retried.status == "received"
    assert retried.retry_count == 1


@pytest.mark.asyncio
async def test_retry_ceiling_and_force(db_session, session_factory, registry, publisher):
    webhook = await _failed_webhook(db_session, session_factory, registry, publisher, max_retries=1)

    async with session_factory() as session:
        await retry_webhook(session, webhook.webhook_id)
    await process_webhook(session_factory, registry, publisher, webhook.webhook_id)

    async with session_factory() as session:
        with pytest.raises(ValidationError, match="Maximum retry attempts exceeded"):
            await retry_webhook(session, webhook.webhook_id)
        exhausted = await list_exhausted_webhooks(session)
        assert [w.webhook_id for w in exhausted] == [webhook.webhook_id]

    async with session_factory() as session:
        forced = await retry_webhook(session, webhook.webhook_id, force=True)
    assert forced.retry_count == 2


@pytest.mark.asyncio
async def test_only_failed_webhooks_can_be_retried(db_session, registry):
    webhook = await _deliver_stripe(db_session, registry, stripe_event("evt_1", "customer.created", "cus_1"))

    with pytest.raises(ValidationError, match="Only failed webhooks"):
        await retry_webhook(db_session, webhook.webhook_id)


@pytest.mark.asyncio
async def test_retry_sweep_applies_webhook_once_payment_exists(db_session, session_factory, registry, publisher):
    webhook = await _failed_webhook(db_session, session_factory, registry, publisher)
    await add_payment(db_session, status="processing", provider_transaction_id="pi_1")

    results = await retry_failed_webhooks(session_factory, registry, publisher)

    assert results == [{
        "webhook_id": webhook.webhook_id,
        "success": True,
        "status": "processed",
        "retry_count": 1,
    }]
    assert publisher.events[0].event_type == "payment.completed"


@pytest.mark.asyncio
async def test_stalled_webhooks_are_released(db_session, session_factory, registry):
    stuck = await _deliver_stripe(db_session, registry, stripe_event("evt_1", "customer.created", "cus_1"))
    fresh = await _deliver_stripe(db_session, registry, stripe_event("evt_2", "customer.created", "cus_2"))
    long_ago = datetime.now(timezone.utc) - timedelta(minutes=30)
    await db_session.execute(
        update(Webhook)
        .where(Webhook.webhook_id == stuck.webhook_id)
        .values(status="processing", updated_at=long_ago)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()

    async with session_factory() as session:
        assert await recover_stalled_webhooks(session, stalled_after_seconds=300) == [stuck.webhook_id]

    assert (await _webhook(session_factory, stuck.webhook_id)).status == "received"
    assert (await _webhook(session_factory, fresh.webhook_id)).status == "received"


@pytest.mark.asyncio
async def test_worker_pool_processes_enqueued_webhooks(db_session, session_factory, registry, publisher):
    payments = [
        await add_payment(db_session, status="processing", provider_transaction_id=f"pi_{i}")
        for i in range(3)
    ]
    webhooks = [
        await _deliver_stripe(db_session, registry, stripe_event(
            f"evt_{i}", "payment_intent.succeeded", f"pi_{i}", p.payment_id,
        ))
        for i, p in enumerate(payments)
    ]

    pool = WebhookWorkerPool(session_factory, registry, publisher, workers=2)
    pool.start()
    try:
        for webhook in webhooks:
            pool.enqueue(webhook.webhook_id)
        await pool.join()
    finally:
        await pool.stop()

    for payment in payments:
        assert (await _payment(session_factory, payment.payment_id)).status == "completed"
    assert len(publisher.of_type("payment.completed")) == 3
    assert not pool.running


@pytest.mark.asyncio
async def test_worker_survives_crashing_webhook(session_factory, registry, publisher, monkeypatch):
    handled = []

    async def flaky_process(session_factory, registry, publisher, webhook_id):
        if webhook_id == "webhook-bad":
            raise RuntimeError("database went away")
        handled.append(webhook_id)

    monkeypatch.setattr("payment_integration.engine.worker.process_webhook", flaky_process)
    pool = WebhookWorkerPool(session_factory, registry, publisher, workers=1)
    pool.start()
    try:
        pool.enqueue("webhook-bad")
        pool.enqueue("webhook-good")
        await pool.join()
        assert pool.running
    finally:
        await pool.stop()

    assert handled == ["webhook-good"]


@pytest.mark.asyncio
async def test_enqueue_requires_running_pool(session_factory, registry, publisher):
    pool = WebhookWorkerPool(session_factory, registry, publisher)
    with pytest.raises(RuntimeError):
        pool.enqueue("webhook-1")


# ── Queries and housekeeping ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cleanup_keeps_failed_and_recent(db_session, session_factory, registry, publisher):
    old_done = await _deliver_stripe(db_session, registry, stripe_event("evt_1", "customer.created", "cus_1"))
    await process_webhook(session_factory, registry, publisher, old_done.webhook_id)
    old_failed = await _failed_webhook(db_session, session_factory, registry, publisher)
    recent = await _deliver_stripe(db_session, registry, stripe_event("evt_3", "customer.created", "cus_3"))
    await process_webhook(session_factory, registry, publisher, recent.webhook_id)

    long_ago = datetime.now(timezone.utc) - timedelta(days=120)
    await db_session.execute(
        update(Webhook)
        .where(Webhook.webhook_id.in_([old_done.webhook_id, old_failed.webhook_id]))
        .values(created_at=long_ago)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()

    async with session_factory() as session:
        assert await cleanup_old_webhooks(session, days=90) == 1
        remaining, total = await list_webhooks(session)

    assert total == 2
    assert {w.webhook_id for w in remaining} == {old_failed.webhook_id, recent.webhook_id}


@pytest.mark.asyncio
async def test_list_and_stats(db_session, session_factory, registry, publisher):
    await _failed_webhook(db_session, session_factory, registry, publisher)
    ignored = await _deliver_stripe(db_session, registry, stripe_event("evt_2", "customer.created", "cus_2"))
    await process_webhook(session_factory, registry, publisher, ignored.webhook_id)

    async with session_factory() as session:
        failed, total = await list_webhooks(session, provider="stripe", status="failed")
        stats = await webhook_stats(session, provider="stripe", period="7d")

    assert total == 1
    assert failed[0].event_id == "evt_early"
    assert {(row["status"], row["count"]) for row in stats} == {("failed", 1), ("ignored", 1)}

    with pytest.raises(ValidationError):
        async with session_factory() as session:
            await webhook_stats(session, period="2w")
