"""
Asynchronous webhook worker pool.

The webhook endpoint enqueues an id and returns; a fixed number of worker
tasks drain the queue, each processing one webhook at a time in its own
database session. Webhooks for different payments proceed in parallel.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_integration.engine.webhooks import process_webhook
from payment_integration.events.publisher import EventPublisher
from payment_integration.providers.registry import ProviderRegistry

logger = logging.getLogger("payment_integration.worker")


class WebhookWorkerPool:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        publisher: EventPublisher,
        workers: int = 4,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._publisher = publisher
        self._size = max(1, workers)
        self._queue: Optional[asyncio.Queue[str]] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._run(i, self._queue), name=f"webhook-worker-{i}")
            for i in range(self._size)
        ]
        logger.info("Started %d webhook workers", self._size)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Webhook workers stopped")

    def enqueue(self, webhook_id: str) -> None:
        if self._queue is None:
            raise RuntimeError("Webhook worker pool is not running")
        self._queue.put_nowait(webhook_id)

    async def join(self) -> None:
        """Wait until every enqueued webhook has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self, index: int, queue: asyncio.Queue) -> None:
        while True:
            webhook_id = await queue.get()
            try:
                await process_webhook(self._session_factory, self._registry, self._publisher, webhook_id)
            except Exception:
                # Left received or processing; the stalled-webhook sweep requeues it.
                logger.exception("Worker %d crashed on webhook %s", index, webhook_id)
            finally:
                queue.task_done()
