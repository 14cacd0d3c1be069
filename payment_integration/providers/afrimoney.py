"""
AfriMoney adapter (MoMo-style collection and disbursement API).

The caller chooses the transaction reference: we send our payment id as
``X-Reference-Id`` and that same value is the provider transaction id for
status polls and notifications. The network's own ``financialTransactionId``
is kept in metadata only.

There is no cancel endpoint. A payment can be abandoned only while the rail
still reports it pending (the subscriber has not approved it yet).
"""

import logging
from typing import Any, Optional

import httpx

from payment_integration.errors import ProviderRequestError, ValidationError
from payment_integration.models.enums import PaymentStatus, PaymentType
from payment_integration.providers.base import (
    CancelResult,
    InitiationResult,
    OAuthPaymentAdapter,
    PaymentRequest,
    StatusResult,
    WebhookEnvelope,
    WebhookInterpretation,
    hmac_sha256_hex,
    load_json,
    signatures_match,
)
from payment_integration.providers.token_cache import TokenCache

logger = logging.getLogger("payment_integration.providers.afrimoney")

COLLECTION_PATH = "/collection/v1_0/requesttopay"
DISBURSEMENT_PATH = "/disbursement/v1_0/transfer"


class AfriMoneyAdapter(OAuthPaymentAdapter):
    STATUS_MAP = {
        "PENDING": PaymentStatus.PENDING,
        "SUCCESSFUL": PaymentStatus.COMPLETED,
        "FAILED": PaymentStatus.FAILED,
        "TIMEOUT": PaymentStatus.FAILED,
        "REJECTED": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.CANCELLED,
    }

    signature_header = "X-AfriMoney-Signature"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_cache: TokenCache,
        api_user: str,
        api_key: str,
        subscription_key: str,
        webhook_secret: str,
        base_url: str = "https://api.afrimoney.com/v1",
        timeout: float = 15.0,
        environment: str = "sandbox",
        callback_base_url: str = "http://localhost:8000",
    ):
        super().__init__(http_client, base_url, token_cache, timeout)
        self._api_user = api_user
        self._api_key = api_key
        self._subscription_key = subscription_key
        self._webhook_secret = webhook_secret
        self._environment = environment
        self._callback_url = f"{callback_base_url.rstrip('/')}/webhooks/afrimoney"

    @property
    def name(self) -> str:
        return "afrimoney"

    def _headers(self, reference_id: Optional[str] = None) -> dict:
        headers = {
            "X-Target-Environment": self._environment,
            "Ocp-Apim-Subscription-Key": self._subscription_key,
        }
        if reference_id:
            headers["X-Reference-Id"] = reference_id
            headers["X-Callback-Url"] = self._callback_url
        return headers

    async def _fetch_token(self) -> tuple[str, float]:
        return await self._token_exchange(
            "/collection/token/",
            auth=(self._api_user, self._api_key),
            headers={"Ocp-Apim-Subscription-Key": self._subscription_key},
        )

    async def initiate(self, payment: PaymentRequest, method_details: dict) -> InitiationResult:
        phone = method_details.get("phone_number")
        if not phone:
            raise ValidationError("AfriMoney payments require payment_method_details.phone_number")

        party = {"partyIdType": "MSISDN", "partyId": phone}
        body: dict[str, Any] = {
            "amount": str(payment.amount),
            "currency": payment.currency,
            "externalId": payment.payment_id,
        }

        if payment.type == PaymentType.WITHDRAWAL.value:
            path = DISBURSEMENT_PATH
            body["payee"] = party
            body["payerMessage"] = payment.description or "Withdrawal from Payment Integration"
            body["payeeNote"] = f"Payout for user {payment.user_id}"
            # Disbursements leave our account immediately.
            status = PaymentStatus.PROCESSING
        else:
            path = COLLECTION_PATH
            body["payer"] = party
            body["payerMessage"] = payment.description or "Deposit to Payment Integration"
            body["payeeNote"] = f"Payment for user {payment.user_id}"
            # Collections wait for the subscriber to approve on their handset.
            status = PaymentStatus.PENDING

        await self._authorized_request(
            "POST", path, json=body, headers=self._headers(reference_id=payment.payment_id)
        )

        return InitiationResult(
            provider_transaction_id=payment.payment_id,
            status=status,
            metadata={
                "reference_id": payment.payment_id,
                "phone_number": phone,
                "network": method_details.get("network"),
            },
        )

    async def check_status(self, provider_transaction_id: str) -> StatusResult:
        try:
            response = await self._authorized_request(
                "GET", f"{COLLECTION_PATH}/{provider_transaction_id}", headers=self._headers()
            )
        except ProviderRequestError as e:
            if e.status_code != 404:
                raise
            # Not a collection; the reference belongs to a disbursement.
            response = await self._authorized_request(
                "GET", f"{DISBURSEMENT_PATH}/{provider_transaction_id}", headers=self._headers()
            )

        data = self._json(response)
        native = data.get("status")
        status = self.map_status(native)
        return StatusResult(
            status=status,
            native_status=native,
            failure_reason=_reason(data.get("reason")) if status == PaymentStatus.FAILED else None,
            metadata={"financial_transaction_id": data.get("financialTransactionId")},
        )

    async def cancel(self, provider_transaction_id: str) -> CancelResult:
        current = await self.check_status(provider_transaction_id)
        if current.status != PaymentStatus.PENDING:
            raise ProviderRequestError(
                f"Cannot cancel AfriMoney payment with status: {current.native_status}",
                retriable=False,
                provider=self.name,
            )
        return CancelResult(status=PaymentStatus.CANCELLED)

    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not self._webhook_secret:
            logger.warning("AfriMoney webhook secret not configured; rejecting webhook")
            return False
        return signatures_match(hmac_sha256_hex(self._webhook_secret, raw_payload), signature_header)

    def parse_envelope(self, raw_payload: bytes) -> WebhookEnvelope:
        payload = load_json(raw_payload)
        reference = payload.get("referenceId") or payload.get("externalId")
        event_id = payload.get("eventId") or f"{reference}:{payload.get('status')}"
        return WebhookEnvelope(
            event_id=str(event_id),
            event_type=str(payload.get("eventType") or "payment_update"),
            provider_transaction_id=reference,
        )

    def interpret_webhook(self, payload: dict) -> WebhookInterpretation:
        reference = payload.get("referenceId") or payload.get("externalId")
        status = self.map_status(payload.get("status"))
        return WebhookInterpretation(
            status=status,
            payment_id=payload.get("externalId") or reference,
            provider_transaction_id=reference,
            failure_reason=(_reason(payload.get("reason")) or "Payment failed")
            if status == PaymentStatus.FAILED
            else None,
            metadata={
                "financial_transaction_id": payload.get("financialTransactionId"),
                "amount": payload.get("amount"),
                "currency": payload.get("currency"),
            },
        )


def _reason(value: Any) -> Optional[str]:
    """The rail reports reasons either as a string or as {code, message}."""
    if isinstance(value, dict):
        return value.get("message") or value.get("code")
    return value
