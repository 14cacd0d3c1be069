"""
Payment endpoints.

POST /payments                       - Create a payment (admission + fee quote).
GET  /payments/stats                 - Volume by provider and type for a period.
GET  /payments/user/{user_id}        - A user's payments, filtered and paginated.
GET  /payments/{id}                  - Get a single payment.
GET  /payments/{id}/trace            - Full status history for a payment.
POST /payments/{id}/process          - Submit a pending payment to its rail.
POST /payments/{id}/cancel           - Cancel an in-flight payment.
POST /payments/{id}/refund           - Refund a completed payment.
POST /payments/{id}/reconcile        - Poll the rail now and apply the result.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from payment_integration.api.dependencies import get_catalog, get_publisher, get_registry
from payment_integration.catalog import ProviderCatalog
from payment_integration.database import get_session
from payment_integration.engine import payments as service
from payment_integration.engine.reconciliation import reconcile_payment
from payment_integration.events.publisher import EventPublisher
from payment_integration.models.enums import PaymentMethodType, PaymentType, ProviderName
from payment_integration.models.payment import AuditLog, Payment
from payment_integration.providers.registry import ProviderRegistry

router = APIRouter(prefix="/payments", tags=["payments"])


class CreatePaymentRequest(BaseModel):
    user_id: str
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    provider: ProviderName
    type: PaymentType
    payment_method_type: PaymentMethodType
    payment_method_details: dict = Field(default_factory=dict)
    description: Optional[str] = Field(None, max_length=500)
    metadata: dict = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[str] = None


class PaymentDetail(BaseModel):
    payment_id: str
    user_id: str
    amount: Decimal
    currency: str
    provider: str
    type: str
    payment_method_type: str
    description: Optional[str]
    fee_amount: Decimal
    fee_currency: str
    provider_transaction_id: Optional[str]
    status: str
    failure_reason: Optional[str]
    webhook_received: bool
    metadata: dict
    processed_at: Optional[str]
    refunded_at: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]


class AuditEntry(BaseModel):
    id: int
    action: str
    webhook_id: Optional[str] = None
    details: Optional[dict] = None
    timestamp: Optional[str]


class PaymentTrace(BaseModel):
    payment: PaymentDetail
    audit_trail: list[AuditEntry]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaymentPage(BaseModel):
    payments: list[PaymentDetail]
    pagination: Pagination


class ReconcileResponse(BaseModel):
    outcome: str
    payment: PaymentDetail


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def payment_to_detail(p: Payment) -> PaymentDetail:
    return PaymentDetail(
        payment_id=p.payment_id,
        user_id=p.user_id,
        amount=p.amount,
        currency=p.currency,
        provider=p.provider,
        type=p.type,
        payment_method_type=p.payment_method_type,
        description=p.description,
        fee_amount=p.fee_amount,
        fee_currency=p.fee_currency,
        provider_transaction_id=p.provider_transaction_id,
        status=p.status,
        failure_reason=p.failure_reason,
        webhook_received=bool(p.webhook_received),
        metadata=p.metadata_ or {},
        processed_at=_iso(p.processed_at),
        refunded_at=_iso(p.refunded_at),
        created_at=_iso(p.created_at),
        updated_at=_iso(p.updated_at),
    )


def _audit_to_entry(log: AuditLog) -> AuditEntry:
    details = None
    if log.details:
        try:
            details = json.loads(log.details)
        except (json.JSONDecodeError, TypeError):
            details = {"raw": log.details}
    return AuditEntry(
        id=log.id,
        action=log.action,
        webhook_id=log.webhook_id,
        details=details,
        timestamp=_iso(log.timestamp),
    )


@router.post("", response_model=PaymentDetail, status_code=201)
async def create_payment(
    body: CreatePaymentRequest,
    session: AsyncSession = Depends(get_session),
    catalog: ProviderCatalog = Depends(get_catalog),
):
    """Admit a payment: validates provider, method, currency and limits, and freezes the fee."""
    payment = await service.create_payment(
        session,
        catalog,
        user_id=body.user_id,
        amount=body.amount,
        currency=body.currency,
        provider=body.provider.value,
        payment_type=body.type.value,
        payment_method_type=body.payment_method_type.value,
        payment_method_details=body.payment_method_details,
        description=body.description,
        metadata=body.metadata,
    )
    return payment_to_detail(payment)


@router.get("/stats")
async def get_payment_stats(
    period: str = Query("30d", description="7d, 30d, 90d or 1y"),
    user_id: Optional[str] = Query(None, description="Restrict to one user"),
    session: AsyncSession = Depends(get_session),
):
    statistics = await service.payment_stats(session, period=period, user_id=user_id)
    return {"period": period, "user_id": user_id, "statistics": statistics}


@router.get("/user/{user_id}", response_model=PaymentPage)
async def list_user_payments(
    user_id: str,
    status: Optional[str] = Query(None, description="Filter by status"),
    provider: Optional[str] = Query(None, description="Filter by provider"),
    type: Optional[str] = Query(None, description="Filter by payment type"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    payments, total = await service.list_user_payments(
        session,
        user_id,
        status=status,
        provider=provider,
        payment_type=type,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return PaymentPage(
        payments=[payment_to_detail(p) for p in payments],
        pagination=Pagination(page=page, limit=limit, total=total, pages=-(-total // limit)),
    )


@router.get("/{payment_id}", response_model=PaymentDetail)
async def get_payment(payment_id: str, session: AsyncSession = Depends(get_session)):
    return payment_to_detail(await service.get_payment(session, payment_id))


@router.get("/{payment_id}/trace", response_model=PaymentTrace)
async def get_payment_trace(payment_id: str, session: AsyncSession = Depends(get_session)):
    """
    Canonical status history for a payment.

    Every proposed transition is listed, including the no-ops (duplicate
    webhooks, polls that lost a race), in the order they were recorded.
    """
    logs = await service.get_payment_trace(session, payment_id)
    payment = await service.get_payment(session, payment_id)
    return PaymentTrace(
        payment=payment_to_detail(payment),
        audit_trail=[_audit_to_entry(log) for log in logs],
    )


@router.post("/{payment_id}/process", response_model=PaymentDetail)
async def process_payment(
    payment_id: str,
    session: AsyncSession = Depends(get_session),
    registry: ProviderRegistry = Depends(get_registry),
    publisher: EventPublisher = Depends(get_publisher),
):
    payment = await service.process_payment(session, registry, publisher, payment_id)
    return payment_to_detail(payment)


@router.post("/{payment_id}/cancel", response_model=PaymentDetail)
async def cancel_payment(
    payment_id: str,
    body: Optional[CancelRequest] = None,
    session: AsyncSession = Depends(get_session),
    registry: ProviderRegistry = Depends(get_registry),
):
    reason = body.reason if body else None
    payment = await service.cancel_payment(session, registry, payment_id, reason=reason)
    return payment_to_detail(payment)


@router.post("/{payment_id}/refund", response_model=PaymentDetail)
async def refund_payment(
    payment_id: str,
    body: Optional[RefundRequest] = None,
    session: AsyncSession = Depends(get_session),
    registry: ProviderRegistry = Depends(get_registry),
    publisher: EventPublisher = Depends(get_publisher),
):
    body = body or RefundRequest()
    payment = await service.refund_payment(
        session, registry, publisher, payment_id, amount=body.amount, reason=body.reason,
    )
    return payment_to_detail(payment)


@router.post("/{payment_id}/reconcile", response_model=ReconcileResponse)
async def reconcile(
    payment_id: str,
    session: AsyncSession = Depends(get_session),
    registry: ProviderRegistry = Depends(get_registry),
    publisher: EventPublisher = Depends(get_publisher),
):
    outcome = await reconcile_payment(session, registry, publisher, payment_id)
    payment = await service.get_payment(session, payment_id)
    await session.refresh(payment)
    return ReconcileResponse(outcome=outcome, payment=payment_to_detail(payment))
