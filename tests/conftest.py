"""Shared test fixtures."""

import copy
import json
import time
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Union

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from payment_integration.catalog import DEFAULT_PROVIDERS, ProviderCatalog, ProviderConfig
from payment_integration.events.publisher import InMemoryEventPublisher
from payment_integration.models.payment import Base, Payment
from payment_integration.providers.afrimoney import AfriMoneyAdapter
from payment_integration.providers.base import hmac_sha256_hex
from payment_integration.providers.orange_money import OrangeMoneyAdapter
from payment_integration.providers.registry import ProviderRegistry
from payment_integration.providers.stripe import StripeAdapter
from payment_integration.providers.token_cache import TokenCache

STRIPE_HOST = "stripe.test"
ORANGE_HOST = "orange.test"
AFRIMONEY_HOST = "afrimoney.test"

STRIPE_WEBHOOK_SECRET = "whsec_test"
ORANGE_WEBHOOK_SECRET = "orange_hook_secret"
AFRIMONEY_WEBHOOK_SECRET = "afrimoney_hook_secret"

Reply = Union[httpx.Response, Callable[[httpx.Request], httpx.Response], Exception]


class FakeRail:
    """
    Scripted provider APIs behind httpx.MockTransport.

    Routes are keyed by "METHOD host/path". A route given a list answers
    with each reply in turn and then keeps repeating the last one.
    Unscripted requests get a 404.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._routes: dict[str, deque] = {}

    def add(
        self,
        method: str,
        target: str,
        json: Any = None,
        status_code: int = 200,
        reply: Optional[Union[Reply, list[Reply]]] = None,
        headers: Optional[dict] = None,
    ) -> None:
        if reply is None:
            reply = httpx.Response(status_code, json=json if json is not None else {}, headers=headers)
        replies = reply if isinstance(reply, list) else [reply]
        self._routes[f"{method} {target}"] = deque(replies)

    def calls(self, method: str, target: str) -> list[httpx.Request]:
        return [r for r in self.requests if f"{r.method} {r.url.host}{r.url.path}" == f"{method} {target}"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        replies = self._routes.get(f"{request.method} {request.url.host}{request.url.path}")
        if not replies:
            return httpx.Response(404, json={"message": "not scripted"})

        reply = replies.popleft() if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply


def stripe_signature(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    t = int(time.time()) if timestamp is None else timestamp
    return f"t={t},v1={hmac_sha256_hex(secret, f'{t}.'.encode('utf-8') + body)}"


def body_signature(body: bytes, secret: str) -> str:
    return hmac_sha256_hex(secret, body)


def stripe_event(
    event_id: str,
    event_type: str,
    intent_id: str,
    payment_id: Optional[str] = None,
    **fields: Any,
) -> bytes:
    obj = {"id": intent_id, "object": "payment_intent", **fields}
    if payment_id:
        obj["metadata"] = {"payment_id": payment_id}
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


def make_catalog(card_deposit_percentage: str = "2") -> ProviderCatalog:
    """Default catalog with a flat percentage card deposit fee (2 % unless given)."""
    providers = copy.deepcopy(DEFAULT_PROVIDERS)
    stripe = next(p for p in providers if p["name"] == "stripe")
    stripe["fees"]["deposit"] = {"fixed": "0", "percentage": card_deposit_percentage}
    return ProviderCatalog(ProviderConfig.model_validate(p) for p in providers)


def build_test_registry(http_client: httpx.AsyncClient, token_cache: Optional[TokenCache] = None) -> ProviderRegistry:
    tokens = token_cache or TokenCache()
    return ProviderRegistry([
        StripeAdapter(
            http_client,
            secret_key="sk_test",
            webhook_secret=STRIPE_WEBHOOK_SECRET,
            base_url=f"https://{STRIPE_HOST}",
        ),
        OrangeMoneyAdapter(
            http_client,
            tokens,
            client_id="orange-client",
            client_secret="orange-secret",
            merchant_key="merchant-1",
            webhook_secret=ORANGE_WEBHOOK_SECRET,
            base_url=f"https://{ORANGE_HOST}/v1",
        ),
        AfriMoneyAdapter(
            http_client,
            tokens,
            api_user="afri-user",
            api_key="afri-key",
            subscription_key="afri-sub",
            webhook_secret=AFRIMONEY_WEBHOOK_SECRET,
            base_url=f"https://{AFRIMONEY_HOST}/v1",
        ),
    ])


async def add_payment(
    session: AsyncSession,
    *,
    status: str = "processing",
    provider: str = "stripe",
    payment_type: str = "deposit",
    amount: str = "100.00",
    currency: str = "USD",
    provider_transaction_id: Optional[str] = None,
    user_id: str = "user-1",
    updated_at: Optional[datetime] = None,
    **fields: Any,
) -> Payment:
    """Insert a payment in any state, bypassing admission."""
    now = datetime.now(timezone.utc)
    payment = Payment(
        user_id=user_id,
        amount=Decimal(amount),
        currency=currency,
        provider=provider,
        type=payment_type,
        payment_method_type="card" if provider == "stripe" else "mobile_money",
        payment_method_details=fields.pop("payment_method_details", {}),
        metadata_=fields.pop("metadata_", {}),
        fee_amount=Decimal(fields.pop("fee_amount", "2.00")),
        fee_currency=currency,
        provider_transaction_id=provider_transaction_id,
        status=status,
        created_at=now,
        updated_at=updated_at or now,
        **fields,
    )
    session.add(payment)
    await session.commit()
    return payment


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite file per test; workers and sweeps open their own sessions on it."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def catalog() -> ProviderCatalog:
    return make_catalog()


@pytest.fixture
def rail() -> FakeRail:
    return FakeRail()


@pytest.fixture
def http_client(rail) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(rail))


@pytest.fixture
def registry(http_client) -> ProviderRegistry:
    return build_test_registry(http_client)


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()
