"""
Payment Integration - provider abstraction and webhook reconciliation API.

Talks to one card processor and two mobile-money networks behind a single
canonical payment lifecycle. Webhooks are recorded before they are
interpreted, every status change goes through one guarded transition, and
a reconciliation sweep converges payments whose webhooks never arrived.

Start the server:
    uvicorn payment_integration.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from payment_integration.api.errors import register_exception_handlers
from payment_integration.api.health import router as health_router
from payment_integration.api.payments import router as payments_router
from payment_integration.api.providers import router as providers_router
from payment_integration.api.reconciliation import router as reconciliation_router
from payment_integration.api.webhooks import router as webhooks_router
from payment_integration.catalog import load_catalog
from payment_integration.config import settings
from payment_integration.database import async_session, init_db
from payment_integration.engine.jobs import BackgroundJobs
from payment_integration.engine.worker import WebhookWorkerPool
from payment_integration.events.publisher import build_publisher
from payment_integration.providers.registry import build_registry

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database, provider adapters, webhook workers and background jobs."""
    await init_db()

    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    app.state.session_factory = async_session
    app.state.catalog = load_catalog(settings.provider_catalog_path)
    app.state.registry = build_registry(settings, http_client)
    app.state.publisher = build_publisher(
        http_client, settings.ledger_service_url, settings.provider_timeout_seconds
    )
    app.state.worker_pool = WebhookWorkerPool(
        async_session, app.state.registry, app.state.publisher, workers=settings.webhook_workers
    )
    app.state.worker_pool.start()

    jobs = None
    if settings.background_jobs_enabled:
        jobs = BackgroundJobs(
            settings, async_session, app.state.registry, app.state.publisher, app.state.worker_pool
        )
        jobs.start()

    yield

    if jobs:
        await jobs.stop()
    await app.state.worker_pool.stop()
    await http_client.aclose()


app = FastAPI(
    title="Payment Integration",
    description=(
        "Provider abstraction and webhook reconciliation engine for card and "
        "mobile-money payments. Canonical status lifecycle, durable idempotent "
        "webhook ingestion, and polling reconciliation for missed notifications."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

register_exception_handlers(app)

app.include_router(health_router)
app.include_router(payments_router, prefix="/api")
app.include_router(providers_router, prefix="/api")
app.include_router(reconciliation_router, prefix="/api")
app.include_router(webhooks_router)
