"""
Downstream notification sinks.

When a payment completes, fails or is refunded the ledger has to hear about
it. Events reach a publisher only through the outbox dispatcher, and every
event carries an idempotency key so a re-delivery after a crash is
harmless downstream.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from payment_integration.engine.retry import is_retriable_status
from payment_integration.errors import ProviderRequestError

logger = logging.getLogger("payment_integration.events")


@dataclass
class PublishedEvent:
    event_type: str
    payload: dict
    idempotency_key: str


class EventPublisher(ABC):
    """Notification sink interface."""

    @abstractmethod
    async def publish(self, event_type: str, payload: dict, idempotency_key: str) -> None:
        """
        Deliver one event.

        Raises:
            ProviderRequestError: Delivery failed; the outbox retries it later.
        """
        ...


class InMemoryEventPublisher(EventPublisher):
    """Keeps published events in a list. De-duplicates on idempotency key."""

    def __init__(self):
        self.events: list[PublishedEvent] = []
        self._seen: set[str] = set()

    async def publish(self, event_type: str, payload: dict, idempotency_key: str) -> None:
        if idempotency_key in self._seen:
            logger.info("Event %s already published; skipping", idempotency_key)
            return
        self._seen.add(idempotency_key)
        self.events.append(PublishedEvent(event_type, payload, idempotency_key))
        logger.info("Published %s (%s)", event_type, idempotency_key)

    def of_type(self, event_type: str) -> list[PublishedEvent]:
        return [e for e in self.events if e.event_type == event_type]


class LedgerHttpPublisher(EventPublisher):
    """
    Notifies the transaction service so it can move balances.

    Completed deposits credit the user, completed withdrawals debit them,
    refunds reverse a completed payment. Failures are published too so the
    ledger can release any hold it placed.
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, timeout: float = 15.0):
        self._http = http_client
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _transaction_body(self, event_type: str, payload: dict) -> dict[str, Any]:
        refund = event_type == "payment.refunded"
        return {
            "user_id": payload.get("user_id"),
            "amount": payload.get("amount"),
            "fee_amount": payload.get("fee_amount"),
            "currency": payload.get("currency"),
            "type": "withdrawal" if refund else payload.get("type"),
            "event_type": event_type,
            "description": f"{payload.get('type')} via {payload.get('provider')}",
            "metadata": {
                "payment_id": payload.get("payment_id"),
                "provider": payload.get("provider"),
                "provider_transaction_id": payload.get("provider_transaction_id"),
                "status": payload.get("status"),
            },
        }

    async def publish(self, event_type: str, payload: dict, idempotency_key: str) -> None:
        url = f"{self.base_url}/transactions"
        try:
            response = await self._http.post(
                url,
                json=self._transaction_body(event_type, payload),
                headers={"Idempotency-Key": idempotency_key},
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise ProviderRequestError(
                f"Ledger notification failed: {e}", retriable=True, provider="ledger"
            ) from e

        # 409 means the ledger already has this key.
        if response.status_code == 409:
            logger.info("Ledger already recorded %s", idempotency_key)
            return

        if response.status_code >= 400:
            raise ProviderRequestError(
                f"Ledger returned HTTP {response.status_code} for {idempotency_key}",
                status_code=response.status_code,
                retriable=is_retriable_status(response.status_code),
                provider="ledger",
            )

        logger.info("Ledger notified: %s (%s)", event_type, idempotency_key)


def build_publisher(
    http_client: httpx.AsyncClient,
    ledger_service_url: Optional[str],
    timeout: float = 15.0,
) -> EventPublisher:
    if ledger_service_url:
        return LedgerHttpPublisher(http_client, ledger_service_url, timeout)
    logger.warning("LEDGER_SERVICE_URL not set; payment events stay in memory")
    return InMemoryEventPublisher()
