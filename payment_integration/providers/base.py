"""
Abstract payment provider interface.

Every rail (card processor, mobile-money networks) implements this contract.
All provider-specific detail (authentication, request signing, payload shape,
status vocabulary) stays inside the adapter; the rest of the service only
ever sees canonical ``PaymentStatus`` values and the dataclasses below.
"""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx

from payment_integration.engine.retry import is_retriable_status
from payment_integration.errors import (
    ProviderRequestError,
    RateLimitError,
    RefundUnsupportedError,
    UnmappedStatusError,
)
from payment_integration.models.enums import PaymentStatus
from payment_integration.providers.token_cache import TokenCache

logger = logging.getLogger("payment_integration.providers")


@dataclass
class PaymentRequest:
    """What an adapter needs to know about a payment to initiate it."""

    payment_id: str
    user_id: str
    amount: Decimal
    currency: str
    type: str  # "deposit", "withdrawal", "payment"
    description: str = ""
    metadata: dict = field(default_factory=dict)

    @property
    def amount_minor(self) -> int:
        """Amount in the smallest currency unit."""
        return int((self.amount * 100).to_integral_value())

    @classmethod
    def from_payment(cls, payment: Any) -> "PaymentRequest":
        return cls(
            payment_id=payment.payment_id,
            user_id=payment.user_id,
            amount=Decimal(str(payment.amount)),
            currency=payment.currency,
            type=payment.type,
            description=payment.description or "",
            metadata=dict(payment.metadata_ or {}),
        )


@dataclass
class InitiationResult:
    provider_transaction_id: str
    status: PaymentStatus
    metadata: dict = field(default_factory=dict)


@dataclass
class StatusResult:
    status: PaymentStatus
    native_status: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class CancelResult:
    status: PaymentStatus


@dataclass
class RefundResult:
    refund_id: str
    status: PaymentStatus
    amount: Optional[Decimal] = None


@dataclass
class WebhookEnvelope:
    """The identifying fields of a webhook, extracted before persistence."""

    event_id: str
    event_type: str
    provider_transaction_id: Optional[str] = None


@dataclass
class WebhookInterpretation:
    """
    Canonical reading of a webhook.

    ``status`` is None when the event type carries no payment status change
    (the webhook is then ignored). ``payment_id`` and
    ``provider_transaction_id`` are the two possible correlation keys.
    """

    status: Optional[PaymentStatus]
    payment_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: Optional[str]) -> bool:
    """Constant-time comparison of two hex signatures."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


def load_json(raw_payload: bytes) -> dict:
    payload = json.loads(raw_payload)
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload is not a JSON object")
    return payload


class PaymentAdapter(ABC):
    """Abstract base class for payment rails."""

    #: Provider-native status string -> canonical status. Exhaustive per rail.
    STATUS_MAP: Mapping[str, PaymentStatus] = {}

    #: HTTP header carrying the webhook signature.
    signature_header: str = ""

    supports_refunds: bool = False

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, timeout: float = 15.0):
        self._http = http_client
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g. 'stripe')."""
        ...

    def map_status(self, native_status: Optional[str]) -> PaymentStatus:
        """
        Translate a provider-native status string.

        Raises:
            UnmappedStatusError: The string is missing from STATUS_MAP.
        """
        status = self.STATUS_MAP.get(native_status or "")
        if status is None:
            raise UnmappedStatusError(self.name, native_status)
        return status

    @abstractmethod
    async def initiate(self, payment: PaymentRequest, method_details: dict) -> InitiationResult:
        """
        Submit a payment to the rail.

        Raises:
            ValidationError: Method details missing what this rail needs.
            ProviderRequestError: Network/API failure or rejection.
        """
        ...

    @abstractmethod
    async def check_status(self, provider_transaction_id: str) -> StatusResult:
        """Poll the rail for the current status of a transaction."""
        ...

    @abstractmethod
    async def cancel(self, provider_transaction_id: str) -> CancelResult:
        ...

    async def refund(
        self,
        provider_transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Refund a completed transaction. Rails without refunds always refuse."""
        raise RefundUnsupportedError(self.name)

    @abstractmethod
    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        ...

    @abstractmethod
    def parse_envelope(self, raw_payload: bytes) -> WebhookEnvelope:
        """
        Extract event id, event type and transaction id from a raw webhook.

        Raises:
            ValueError: The payload cannot be parsed.
        """
        ...

    @abstractmethod
    def interpret_webhook(self, payload: dict) -> WebhookInterpretation:
        """
        Read a parsed webhook payload as a canonical status proposal.

        Raises:
            UnmappedStatusError: The payload carries an unknown status string.
        """
        ...

    # ── HTTP plumbing ────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request to the provider, normalising every failure mode.

        Timeouts and transport errors become retriable ProviderRequestErrors;
        429 becomes RateLimitError; other 4xx are permanent, 5xx retriable.
        """
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderRequestError(
                f"{self.name} request timed out: {method} {path}",
                retriable=True,
                provider=self.name,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderRequestError(
                f"{self.name} request failed: {method} {path}: {e}",
                retriable=True,
                provider=self.name,
            ) from e

        if response.status_code == 429:
            raise RateLimitError(
                message=f"{self.name} rate limited: {method} {path}",
                retry_after=_retry_after(response),
                provider=self.name,
            )

        if response.status_code >= 400:
            raise ProviderRequestError(
                f"{self.name} returned HTTP {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
                retriable=is_retriable_status(response.status_code),
                provider=self.name,
            )

        return response

    def _json(self, response: httpx.Response, *required: str) -> dict:
        """Decode a success reply; a non-object body or a missing key is a permanent provider error."""
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderRequestError(
                f"{self.name} returned a non-JSON body (HTTP {response.status_code})",
                status_code=response.status_code,
                retriable=False,
                provider=self.name,
            ) from e
        if not isinstance(data, dict):
            raise ProviderRequestError(
                f"{self.name} returned an unexpected body (HTTP {response.status_code})",
                status_code=response.status_code,
                retriable=False,
                provider=self.name,
            )
        missing = [key for key in required if not data.get(key)]
        if missing:
            raise ProviderRequestError(
                f"{self.name} reply is missing {', '.join(missing)}",
                status_code=response.status_code,
                retriable=False,
                provider=self.name,
            )
        return data


class OAuthPaymentAdapter(PaymentAdapter):
    """
    Adapter for rails that require a client-credentials bearer token.

    Tokens live in an injected TokenCache keyed by provider name, so
    concurrent calls share one token and a cold cache triggers one fetch.
    A 401 from the rail evicts the token; the next call fetches a new one.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        token_cache: TokenCache,
        timeout: float = 15.0,
    ):
        super().__init__(http_client, base_url, timeout)
        self._tokens = token_cache

    @abstractmethod
    async def _fetch_token(self) -> tuple[str, float]:
        """Perform the client-credentials exchange. Returns (token, expires_in seconds)."""
        ...

    async def _bearer_token(self) -> str:
        return await self._tokens.get(self.name, self._fetch_token)

    async def _authorized_request(
        self,
        method: str,
        path: str,
        headers: Optional[dict] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        token = await self._bearer_token()
        merged = {"Authorization": f"Bearer {token}", **(headers or {})}
        try:
            return await self._request(method, path, headers=merged, **kwargs)
        except ProviderRequestError as e:
            if e.status_code == 401:
                logger.warning("%s rejected the cached token; evicting it", self.name)
                self._tokens.invalidate(self.name)
                e.retriable = True
            raise

    async def _token_exchange(self, path: str, **kwargs: Any) -> tuple[str, float]:
        try:
            response = await self._request("POST", path, **kwargs)
        except ProviderRequestError as e:
            raise ProviderRequestError(
                f"Failed to get {self.name} access token: {e}",
                status_code=e.status_code,
                retriable=e.retriable,
                provider=self.name,
            ) from e
        data = response.json()
        token = data.get("access_token")
        if not token:
            raise ProviderRequestError(
                f"{self.name} token response carried no access_token",
                retriable=True,
                provider=self.name,
            )
        return token, float(data.get("expires_in", 3600))


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(data.get("message") or error or data)[:200]
    return str(data)[:200]
