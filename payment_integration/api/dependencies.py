"""Request-scoped access to the singletons built in the app lifespan."""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_integration.catalog import ProviderCatalog
from payment_integration.engine.worker import WebhookWorkerPool
from payment_integration.events.publisher import EventPublisher
from payment_integration.providers.registry import ProviderRegistry


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_catalog(request: Request) -> ProviderCatalog:
    return request.app.state.catalog


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def get_worker_pool(request: Request) -> WebhookWorkerPool:
    return request.app.state.worker_pool


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory
