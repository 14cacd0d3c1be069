"""
Periodic background jobs, run as asyncio tasks inside the API process.

  - reconciliation sweep      every RECONCILIATION_INTERVAL_SECONDS
  - webhook retry sweep       every WEBHOOK_RETRY_INTERVAL_SECONDS
    (also requeues stalled webhooks left behind by a crash)
  - outbox dispatch           every OUTBOX_DISPATCH_INTERVAL_SECONDS
  - webhook cleanup           daily
"""

import asyncio
import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_integration.config import Settings
from payment_integration.engine.reconciliation import run_reconciliation
from payment_integration.engine.webhooks import (
    cleanup_old_webhooks,
    recover_stalled_webhooks,
    retry_failed_webhooks,
)
from payment_integration.engine.worker import WebhookWorkerPool
from payment_integration.events.outbox import dispatch_pending_events
from payment_integration.events.publisher import EventPublisher
from payment_integration.providers.registry import ProviderRegistry

logger = logging.getLogger("payment_integration.jobs")

CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60


class BackgroundJobs:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        publisher: EventPublisher,
        worker_pool: WebhookWorkerPool,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._registry = registry
        self._publisher = publisher
        self._workers = worker_pool
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        s = self._settings
        self._tasks = [
            self._spawn("reconciliation", self.reconcile, s.reconciliation_interval_seconds),
            self._spawn("webhook-retry", self.retry_webhooks, s.webhook_retry_interval_seconds),
            self._spawn("outbox", self.dispatch_events, s.outbox_dispatch_interval_seconds),
            self._spawn("webhook-cleanup", self.cleanup_webhooks, CLEANUP_INTERVAL_SECONDS),
        ]
        logger.info("Started %d background jobs", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def _spawn(self, name: str, job: Callable[[], Awaitable[object]], interval: float) -> asyncio.Task:
        return asyncio.create_task(self._loop(name, job, interval), name=f"job-{name}")

    async def _loop(self, name: str, job: Callable[[], Awaitable[object]], interval: float) -> None:
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Background job %s failed; next run in %ss", name, interval)
            await asyncio.sleep(interval)

    async def reconcile(self) -> dict:
        s = self._settings
        return await run_reconciliation(
            self._session_factory,
            self._registry,
            self._publisher,
            stale_after_seconds=s.reconciliation_stale_after_seconds,
            concurrency_per_provider=s.reconciliation_concurrency_per_provider,
            limit=s.reconciliation_batch_size,
        )

    async def retry_webhooks(self) -> list[dict]:
        async with self._session_factory() as session:
            stalled = await recover_stalled_webhooks(session, self._settings.webhook_retry_interval_seconds)
        for webhook_id in stalled:
            self._workers.enqueue(webhook_id)
        return await retry_failed_webhooks(self._session_factory, self._registry, self._publisher)

    async def dispatch_events(self) -> dict:
        return await dispatch_pending_events(self._session_factory, self._publisher)

    async def cleanup_webhooks(self) -> int:
        async with self._session_factory() as session:
            return await cleanup_old_webhooks(session, self._settings.webhook_retention_days)
