"""
Reconciliation trigger.

POST /reconciliation/run - Run one sweep now instead of waiting for the scheduler.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_integration.api.dependencies import get_publisher, get_registry, get_session_factory
from payment_integration.config import settings
from payment_integration.engine.reconciliation import run_reconciliation
from payment_integration.events.publisher import EventPublisher
from payment_integration.providers.registry import ProviderRegistry

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.post("/run")
async def run_sweep(
    stale_after_seconds: Optional[int] = Query(None, ge=0, description="Override the staleness threshold"),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    registry: ProviderRegistry = Depends(get_registry),
    publisher: EventPublisher = Depends(get_publisher),
):
    threshold = settings.reconciliation_stale_after_seconds if stale_after_seconds is None else stale_after_seconds
    return await run_reconciliation(
        session_factory,
        registry,
        publisher,
        stale_after_seconds=threshold,
        concurrency_per_provider=settings.reconciliation_concurrency_per_provider,
        limit=settings.reconciliation_batch_size,
    )
