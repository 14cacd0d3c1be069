"""Integration tests for the payment service."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import ORANGE_HOST, STRIPE_HOST, add_payment, make_catalog, stripe_event, stripe_signature
from payment_integration.engine.payments import (
    cancel_payment,
    create_payment,
    get_payment_trace,
    list_user_payments,
    payment_stats,
    process_payment,
    provider_stats,
    refund_payment,
)
from payment_integration.engine.webhooks import ingest_webhook, process_webhook
from payment_integration.errors import (
    InvalidTransitionError,
    LimitExceededError,
    ProviderRequestError,
    RefundUnsupportedError,
    ValidationError,
)
from payment_integration.models.payment import Payment


def _card_deposit(**overrides):
    params = dict(
        user_id="user-1",
        amount=Decimal("100"),
        currency="USD",
        provider="stripe",
        payment_type="deposit",
        payment_method_type="card",
        payment_method_details={"payment_method_id": "pm_card"},
    )
    params.update(overrides)
    return params


async def _payment_count(session):
    return (await session.execute(select(func.count()).select_from(Payment))).scalar_one()


@pytest.mark.asyncio
async def test_card_deposit_end_to_end(db_session, session_factory, catalog, registry, rail, publisher):
    """$100 card deposit at 2 %: quoted, processed, completed by webhook, duplicate ignored."""
    payment = await create_payment(db_session, catalog, **_card_deposit())
    assert payment.status == "pending"
    assert payment.fee_amount == Decimal("2.00")
    assert payment.fee_currency == "USD"

    rail.add("POST", f"{STRIPE_HOST}/v1/payment_intents", json={"id": "pi_100", "status": "processing"})
    processed = await process_payment(db_session, registry, publisher, payment.payment_id)
    assert processed.status == "processing"
    assert processed.provider_transaction_id == "pi_100"

    body = stripe_event("evt_100", "payment_intent.succeeded", "pi_100", payment.payment_id)
    for _ in range(2):
        webhook = await ingest_webhook(db_session, registry["stripe"], body, stripe_signature(body))
        await process_webhook(session_factory, registry, publisher, webhook.webhook_id)

    async with session_factory() as session:
        settled = await session.get(Payment, payment.payment_id)
        trace = await get_payment_trace(session, payment.payment_id)

    assert settled.status == "completed"
    assert settled.fee_amount == Decimal("2.00")
    assert [e.event_type for e in publisher.events] == ["payment.completed"]
    assert publisher.events[0].payload["fee_amount"] == "2.00"
    assert [log.action for log in trace] == [
        "payment_created",
        "status_changed",
        "provider_initiated",
        "status_changed",
        "webhook_processed",
    ]


@pytest.mark.asyncio
async def test_withdrawal_above_max_is_rejected_without_a_record(db_session, catalog):
    with pytest.raises(LimitExceededError) as exc:
        await create_payment(db_session, catalog, **_card_deposit(
            amount=Decimal("20000"), payment_type="withdrawal", payment_method_details={"account_id": "acct_1"},
        ))

    assert exc.value.limit_name == "max"
    assert exc.value.limit_value == 10000.0
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"provider": "paypal"},
    {"payment_type": "chargeback"},
    {"payment_method_type": "mobile_money"},
    {"currency": "XOF"},
    {"amount": "-5"},
])
async def test_admission_failures_write_nothing(db_session, catalog, overrides):
    with pytest.raises(ValidationError):
        await create_payment(db_session, catalog, **_card_deposit(**overrides))
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_daily_limit_counts_open_and_completed_payments(db_session, catalog):
    await add_payment(db_session, status="completed", amount="30000.00")
    await add_payment(db_session, status="processing", amount="15000.00")
    await add_payment(db_session, status="failed", amount="9000.00")

    await create_payment(db_session, catalog, **_card_deposit(amount=Decimal("5000")))
    # Pending payments do not count; 45000 + 6000 is over the allowance.
    with pytest.raises(LimitExceededError) as exc:
        await create_payment(db_session, catalog, **_card_deposit(amount=Decimal("6000")))
    assert exc.value.limit_name == "daily"

    # Another user has their own allowance.
    await create_payment(db_session, catalog, **_card_deposit(user_id="user-2", amount=Decimal("6000")))


@pytest.mark.asyncio
async def test_failed_initiation_marks_payment_failed(db_session, catalog, registry, rail, publisher):
    payment = await create_payment(db_session, catalog, **_card_deposit())
    rail.add("POST", f"{STRIPE_HOST}/v1/payment_intents", status_code=402,
             json={"error": {"message": "Your card was declined."}})

    with pytest.raises(ProviderRequestError):
        await process_payment(db_session, registry, publisher, payment.payment_id)

    await db_session.refresh(payment)
    assert payment.status == "failed"
    assert "declined" in payment.failure_reason
    assert payment.provider_transaction_id is None
    assert [e.event_type for e in publisher.events] == ["payment.failed"]


@pytest.mark.asyncio
async def test_reply_without_transaction_id_fails_payment(db_session, catalog, registry, rail, publisher):
    payment = await create_payment(db_session, catalog, **_card_deposit())
    rail.add("POST", f"{STRIPE_HOST}/v1/payment_intents", json={"status": "processing"})

    with pytest.raises(ProviderRequestError):
        await process_payment(db_session, registry, publisher, payment.payment_id)

    await db_session.refresh(payment)
    assert payment.status == "failed"
    assert "missing id" in payment.failure_reason
    assert payment.provider_transaction_id is None
    assert [e.event_type for e in publisher.events] == ["payment.failed"]


@pytest.mark.asyncio
async def test_unexpected_initiation_error_still_fails_payment(
    db_session, catalog, registry, publisher, monkeypatch,
):
    payment = await create_payment(db_session, catalog, **_card_deposit())

    async def broken_initiate(request, method_details):
        raise KeyError("client_secret")

    monkeypatch.setattr(registry["stripe"], "initiate", broken_initiate)

    with pytest.raises(ProviderRequestError) as exc:
        await process_payment(db_session, registry, publisher, payment.payment_id)
    assert not exc.value.retriable

    await db_session.refresh(payment)
    assert payment.status == "failed"
    assert "KeyError" in payment.failure_reason


@pytest.mark.asyncio
async def test_fee_is_frozen_at_creation(db_session, session_factory, catalog, registry, rail, publisher):
    payment = await create_payment(db_session, catalog, **_card_deposit())

    # Operator reprices card deposits after the payment was admitted.
    repriced = make_catalog(card_deposit_percentage="5")
    assert (await create_payment(db_session, repriced, **_card_deposit())).fee_amount == Decimal("5.00")

    rail.add("POST", f"{STRIPE_HOST}/v1/payment_intents", json={"id": "pi_1", "status": "processing"})
    await process_payment(db_session, registry, publisher, payment.payment_id)
    body = stripe_event("evt_1", "payment_intent.succeeded", "pi_1", payment.payment_id)
    webhook = await ingest_webhook(db_session, registry["stripe"], body, stripe_signature(body))
    await process_webhook(session_factory, registry, publisher, webhook.webhook_id)

    async with session_factory() as session:
        settled = await session.get(Payment, payment.payment_id)
    assert settled.status == "completed"
    assert settled.fee_amount == Decimal("2.00")
    assert [e.payload["fee_amount"] for e in publisher.events] == ["2.00"]


@pytest.mark.asyncio
async def test_missing_method_details_fail_initiation(db_session, catalog, registry, rail, publisher):
    payment = await create_payment(db_session, catalog, **_card_deposit(payment_method_details={}))

    with pytest.raises(ValidationError):
        await process_payment(db_session, registry, publisher, payment.payment_id)

    await db_session.refresh(payment)
    assert payment.status == "failed"
    assert rail.requests == []


@pytest.mark.asyncio
async def test_only_pending_payments_are_processed(db_session, registry, publisher):
    payment = await add_payment(db_session, status="processing", provider_transaction_id="pi_1")

    with pytest.raises(InvalidTransitionError):
        await process_payment(db_session, registry, publisher, payment.payment_id)


@pytest.mark.asyncio
async def test_immediately_settled_transfer(db_session, catalog, registry, rail, publisher):
    payment = await create_payment(db_session, catalog, **_card_deposit(
        payment_type="withdrawal", amount=Decimal("250"), payment_method_details={"account_id": "acct_1"},
    ))
    rail.add("POST", f"{STRIPE_HOST}/v1/transfers", json={"id": "tr_1", "reversed": False})

    settled = await process_payment(db_session, registry, publisher, payment.payment_id)

    assert settled.status == "completed"
    assert settled.fee_amount == Decimal("0.25")
    assert [e.event_type for e in publisher.events] == ["payment.completed"]


@pytest.mark.asyncio
async def test_mobile_money_deposit_waits_for_approval(db_session, catalog, registry, rail, publisher):
    payment = await create_payment(db_session, catalog, **_card_deposit(
        provider="orange_money", currency="XOF", amount=Decimal("5000"),
        payment_method_type="mobile_money", payment_method_details={"phone_number": "2250700000000"},
    ))
    rail.add("POST", f"{ORANGE_HOST}/v1/oauth/token", json={"access_token": "t", "expires_in": 3600})
    rail.add("POST", f"{ORANGE_HOST}/v1/webpayment", json={
        "status": "SUCCESS", "pay_token": "ptok_1", "payment_url": "https://pay.orange.test/ptok_1",
    })

    processed = await process_payment(db_session, registry, publisher, payment.payment_id)

    assert processed.status == "processing"
    assert processed.provider_transaction_id == "ptok_1"
    assert processed.metadata_["payment_url"] == "https://pay.orange.test/ptok_1"
    assert processed.fee_amount == Decimal("75.00")


@pytest.mark.asyncio
async def test_cancel_processing_payment(db_session, registry, rail):
    payment = await add_payment(db_session, status="processing", provider_transaction_id="pi_1")
    rail.add("POST", f"{STRIPE_HOST}/v1/payment_intents/pi_1/cancel", json={"id": "pi_1", "status": "canceled"})

    cancelled = await cancel_payment(db_session, registry, payment.payment_id, reason="Changed my mind")

    assert cancelled.status == "cancelled"
    assert cancelled.failure_reason == "Changed my mind"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["pending", "completed", "failed"])
async def test_cancel_outside_processing_is_rejected(db_session, registry, rail, status):
    payment = await add_payment(db_session, status=status, provider_transaction_id="pi_1")

    with pytest.raises(InvalidTransitionError):
        await cancel_payment(db_session, registry, payment.payment_id)
    assert rail.requests == []


@pytest.mark.asyncio
async def test_refund_completed_card_payment(db_session, registry, rail, publisher):
    payment = await add_payment(db_session, status="completed", provider_transaction_id="pi_1")
    rail.add("POST", f"{STRIPE_HOST}/v1/refunds", json={"id": "re_1", "status": "succeeded", "amount": 4000})

    refunded = await refund_payment(db_session, registry, publisher, payment.payment_id,
                                    amount="40", reason="duplicate")

    assert refunded.status == "refunded"
    assert refunded.refunded_at is not None
    assert refunded.metadata_["refund"]["refund_id"] == "re_1"
    assert refunded.metadata_["refund"]["amount"] == "40"
    assert refunded.fee_amount == Decimal("2.00")
    assert [e.event_type for e in publisher.events] == ["payment.refunded"]


@pytest.mark.asyncio
async def test_refund_on_mobile_money_is_unsupported(db_session, registry, rail, publisher):
    payment = await add_payment(db_session, status="completed", provider="orange_money",
                                currency="XOF", provider_transaction_id="ptok_1")

    with pytest.raises(RefundUnsupportedError):
        await refund_payment(db_session, registry, publisher, payment.payment_id)

    await db_session.refresh(payment)
    assert payment.status == "completed"
    assert rail.requests == []
    trace = await get_payment_trace(db_session, payment.payment_id)
    assert [log.action for log in trace] == ["refund_unsupported"]


@pytest.mark.asyncio
async def test_refund_guards(db_session, registry, publisher):
    processing = await add_payment(db_session, status="processing", provider_transaction_id="pi_1")
    with pytest.raises(InvalidTransitionError):
        await refund_payment(db_session, registry, publisher, processing.payment_id)

    completed = await add_payment(db_session, status="completed", provider_transaction_id="pi_2")
    with pytest.raises(ValidationError):
        await refund_payment(db_session, registry, publisher, completed.payment_id, amount="100.01")


@pytest.mark.asyncio
async def test_queries(db_session):
    for amount in ("10.00", "20.00", "30.00"):
        await add_payment(db_session, status="completed", amount=amount)
    await add_payment(db_session, status="failed", amount="40.00")
    await add_payment(db_session, status="completed", amount="50.00", user_id="user-2")

    page, total = await list_user_payments(db_session, "user-1", page=1, limit=2)
    assert total == 4
    assert len(page) == 2

    completed, total = await list_user_payments(db_session, "user-1", status="completed")
    assert total == 3

    stats = await payment_stats(db_session, period="30d", user_id="user-1")
    assert stats == [{
        "provider": "stripe",
        "type": "deposit",
        "count": 3,
        "total_amount": Decimal("60"),
        "total_fees": Decimal("6"),
    }]

    by_status = {row["status"]: row["count"] for row in await provider_stats(db_session, "stripe", "7d")}
    assert by_status == {"completed": 4, "failed": 1}

    with pytest.raises(ValidationError):
        await payment_stats(db_session, period="forever")
