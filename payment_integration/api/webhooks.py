"""
Webhook endpoints.

POST /webhooks/retry-failed        - Retry every failed webhook with retries left.
POST /webhooks/{provider}          - Provider callback: verify, record, acknowledge.
GET  /webhooks                     - List webhooks (filter by provider/status).
GET  /webhooks/stats               - Counts by provider and status for a period.
GET  /webhooks/exhausted           - Failed webhooks that need manual intervention.
GET  /webhooks/{id}                - Get a single webhook.
POST /webhooks/{id}/retry          - Retry one failed webhook (force overrides the ceiling).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_integration.api.dependencies import (
    get_publisher,
    get_registry,
    get_session_factory,
    get_worker_pool,
)
from payment_integration.config import settings
from payment_integration.database import get_session
from payment_integration.engine import webhooks as service
from payment_integration.engine.worker import WebhookWorkerPool
from payment_integration.events.publisher import EventPublisher
from payment_integration.models.payment import Webhook
from payment_integration.providers.registry import ProviderRegistry

logger = logging.getLogger("payment_integration.api.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookAck(BaseModel):
    received: bool
    webhook_id: str


class WebhookDetail(BaseModel):
    webhook_id: str
    provider: str
    event_id: str
    event_type: str
    provider_transaction_id: Optional[str]
    payment_id: Optional[str]
    status: str
    retry_count: int
    max_retries: int
    failure_reason: Optional[str]
    processed_at: Optional[str]
    created_at: Optional[str]


class WebhookPage(BaseModel):
    webhooks: list[WebhookDetail]
    total: int
    page: int
    limit: int


class RetryResponse(BaseModel):
    webhook_id: str
    retry_count: int
    max_retries: int
    status: str


def _webhook_to_detail(w: Webhook) -> WebhookDetail:
    return WebhookDetail(
        webhook_id=w.webhook_id,
        provider=w.provider,
        event_id=w.event_id,
        event_type=w.event_type,
        provider_transaction_id=w.provider_transaction_id,
        payment_id=w.payment_id,
        status=w.status,
        retry_count=w.retry_count,
        max_retries=w.max_retries,
        failure_reason=w.failure_reason,
        processed_at=w.processed_at.isoformat() if w.processed_at else None,
        created_at=w.created_at.isoformat() if w.created_at else None,
    )


def _dispatch(pool: WebhookWorkerPool, webhook_id: str) -> None:
    if pool.running:
        pool.enqueue(webhook_id)
    else:
        logger.warning("Worker pool not running; webhook %s left for the stalled sweep", webhook_id[:8])


@router.post("/retry-failed")
async def retry_failed(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    registry: ProviderRegistry = Depends(get_registry),
    publisher: EventPublisher = Depends(get_publisher),
):
    results = await service.retry_failed_webhooks(session_factory, registry, publisher)
    return {"retried": len(results), "results": results}


@router.post("/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    registry: ProviderRegistry = Depends(get_registry),
    pool: WebhookWorkerPool = Depends(get_worker_pool),
):
    """
    Provider callback.

    Answers 200 as soon as the raw notification is durably recorded,
    whatever happens during processing. Only a bad signature (401) or an
    unknown provider (404) is refused.
    """
    adapter = registry.get_adapter(provider)
    raw_body = await request.body()
    webhook = await service.ingest_webhook(
        session,
        adapter,
        raw_body,
        request.headers.get(adapter.signature_header),
        max_retries=settings.webhook_max_retries,
    )
    _dispatch(pool, webhook.webhook_id)
    return WebhookAck(received=True, webhook_id=webhook.webhook_id)


@router.get("", response_model=WebhookPage)
async def list_webhooks(
    provider: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    webhooks, total = await service.list_webhooks(session, provider=provider, status=status, page=page, limit=limit)
    return WebhookPage(webhooks=[_webhook_to_detail(w) for w in webhooks], total=total, page=page, limit=limit)


@router.get("/stats")
async def get_webhook_stats(
    provider: Optional[str] = Query(None),
    period: str = Query("30d", description="7d, 30d, 90d or 1y"),
    session: AsyncSession = Depends(get_session),
):
    statistics = await service.webhook_stats(session, provider=provider, period=period)
    return {"provider": provider, "period": period, "statistics": statistics}


@router.get("/exhausted", response_model=list[WebhookDetail])
async def list_exhausted(
    limit: int = Query(100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    return [_webhook_to_detail(w) for w in await service.list_exhausted_webhooks(session, limit)]


@router.get("/{webhook_id}", response_model=WebhookDetail)
async def get_webhook(webhook_id: str, session: AsyncSession = Depends(get_session)):
    return _webhook_to_detail(await service.get_webhook(session, webhook_id))


@router.post("/{webhook_id}/retry", response_model=RetryResponse)
async def retry_webhook(
    webhook_id: str,
    force: bool = Query(False, description="Ignore the retry ceiling"),
    session: AsyncSession = Depends(get_session),
    pool: WebhookWorkerPool = Depends(get_worker_pool),
):
    webhook = await service.retry_webhook(session, webhook_id, force=force)
    _dispatch(pool, webhook.webhook_id)
    return RetryResponse(
        webhook_id=webhook.webhook_id,
        retry_count=webhook.retry_count,
        max_retries=webhook.max_retries,
        status="retry_initiated",
    )
