"""
Orange Money adapter.

Deposits go through the web-payment flow: the rail returns a pay token
(our provider transaction id) and a URL where the subscriber approves the
debit. Withdrawals are cash-in transfers to the subscriber's wallet.
Every payment carries ``reference = "PAY-<payment_id>"``, which is how
notifications are correlated back to us.

Outbound web-payment requests carry a shared-secret signature (sha256 of the
sorted parameters followed by the client secret). Inbound notifications are
signed with HMAC-SHA256 of the raw body in ``X-Orange-Signature``.
"""

import hashlib
import logging
from typing import Optional

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

logger = logging.getLogger("payment_integration.providers.orange_money")

REFERENCE_PREFIX = "PAY-"


class OrangeMoneyAdapter(OAuthPaymentAdapter):
    STATUS_MAP = {
        "PENDING": PaymentStatus.PENDING,
        "INITIATED": PaymentStatus.PROCESSING,
        "SUCCESS": PaymentStatus.COMPLETED,
        "FAILED": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.CANCELLED,
        "EXPIRED": PaymentStatus.FAILED,
    }

    signature_header = "X-Orange-Signature"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_cache: TokenCache,
        client_id: str,
        client_secret: str,
        merchant_key: str,
        webhook_secret: str,
        base_url: str = "https://api.orange.com/orange-money-webpay/dev/v1",
        timeout: float = 15.0,
        callback_base_url: str = "http://localhost:8000",
        frontend_url: str = "http://localhost:3000",
    ):
        super().__init__(http_client, base_url, token_cache, timeout)
        self._client_id = client_id
        self._client_secret = client_secret
        self._merchant_key = merchant_key
        self._webhook_secret = webhook_secret
        self._callback_base_url = callback_base_url.rstrip("/")
        self._frontend_url = frontend_url.rstrip("/")

    @property
    def name(self) -> str:
        return "orange_money"

    async def _fetch_token(self) -> tuple[str, float]:
        return await self._token_exchange(
            "/oauth/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
        )

    def sign_request(self, params: dict) -> str:
        """Shared-secret signature over the sorted request parameters."""
        joined = "&".join(f"{key}={params[key]}" for key in sorted(params) if key != "signature")
        return hashlib.sha256((joined + self._client_secret).encode("utf-8")).hexdigest()

    async def initiate(self, payment: PaymentRequest, method_details: dict) -> InitiationResult:
        phone = method_details.get("phone_number")
        if not phone:
            raise ValidationError("Orange Money payments require payment_method_details.phone_number")
        country = method_details.get("country") or "CI"
        reference = f"{REFERENCE_PREFIX}{payment.payment_id}"

        if payment.type == PaymentType.WITHDRAWAL.value:
            body = {
                "partner_id": self._merchant_key,
                "reference": reference,
                "subscriberMsisdn": phone,
                "amount": str(payment.amount),
                "currency": payment.currency,
                "description": payment.description or "Withdrawal from Payment Integration",
                "metadata": {"userId": payment.user_id, "paymentId": payment.payment_id},
            }
            data = await self._post_operation("/cashin", body, "transaction_id")
            return InitiationResult(
                provider_transaction_id=data["transaction_id"],
                status=PaymentStatus.PROCESSING,
                metadata={"orange_transaction_id": data["transaction_id"], "phone_number": phone},
            )

        body = {
            "merchant_key": self._merchant_key,
            "currency": payment.currency,
            "order_id": payment.payment_id,
            "amount": str(payment.amount),
            "return_url": f"{self._frontend_url}/payment/return",
            "cancel_url": f"{self._frontend_url}/payment/cancel",
            "notif_url": f"{self._callback_base_url}/webhooks/orange_money",
            "lang": "en",
            "reference": reference,
            "customer_msisdn": phone,
            "customer_country_code": country,
        }
        body["signature"] = self.sign_request(body)
        data = await self._post_operation("/webpayment", body, "pay_token")

        # Awaiting subscriber approval on the payment page.
        return InitiationResult(
            provider_transaction_id=data["pay_token"],
            status=PaymentStatus.PENDING,
            metadata={
                "pay_token": data["pay_token"],
                "payment_url": data.get("payment_url"),
                "phone_number": phone,
            },
        )

    async def _post_operation(self, path: str, body: dict, *required: str) -> dict:
        response = await self._authorized_request("POST", path, json=body)
        data = self._json(response)
        if data.get("status") != "SUCCESS":
            raise ProviderRequestError(
                data.get("message") or f"Orange Money rejected {path}",
                retriable=False,
                provider=self.name,
            )
        return self._json(response, *required)

    async def check_status(self, provider_transaction_id: str) -> StatusResult:
        response = await self._authorized_request("GET", f"/transactions/{provider_transaction_id}")
        data = self._json(response)
        native = data.get("status")
        status = self.map_status(native)
        return StatusResult(
            status=status,
            native_status=native,
            failure_reason=data.get("message") if status == PaymentStatus.FAILED else None,
            metadata={"amount": data.get("amount"), "currency": data.get("currency")},
        )

    async def cancel(self, provider_transaction_id: str) -> CancelResult:
        response = await self._authorized_request(
            "POST", f"/transactions/{provider_transaction_id}/cancel", json={}
        )
        data = self._json(response)
        if data.get("status") != "SUCCESS":
            raise ProviderRequestError(
                data.get("message") or "Orange Money refused the cancellation",
                retriable=False,
                provider=self.name,
            )
        return CancelResult(status=PaymentStatus.CANCELLED)

    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not self._webhook_secret:
            logger.warning("Orange Money webhook secret not configured; rejecting webhook")
            return False
        return signatures_match(hmac_sha256_hex(self._webhook_secret, raw_payload), signature_header)

    def parse_envelope(self, raw_payload: bytes) -> WebhookEnvelope:
        payload = load_json(raw_payload)
        transaction_id = _transaction_id(payload)
        event_id = payload.get("notif_token") or f"{transaction_id}:{payload.get('status')}"
        return WebhookEnvelope(
            event_id=str(event_id),
            event_type=str(payload.get("event_type") or "payment_update"),
            provider_transaction_id=transaction_id,
        )

    def interpret_webhook(self, payload: dict) -> WebhookInterpretation:
        reference = payload.get("reference") or ""
        payment_id = reference[len(REFERENCE_PREFIX):] if reference.startswith(REFERENCE_PREFIX) else None
        status = self.map_status(payload.get("status"))

        return WebhookInterpretation(
            status=status,
            payment_id=payment_id,
            provider_transaction_id=_transaction_id(payload),
            failure_reason=(payload.get("message") or "Payment failed") if status == PaymentStatus.FAILED else None,
            metadata={
                "orange_transaction_id": payload.get("transaction_id"),
                "amount": payload.get("amount"),
                "currency": payload.get("currency"),
            },
        )


def _transaction_id(payload: dict) -> Optional[str]:
    """Web-payment notifications carry the pay token; cash-in ones the transaction id."""
    return payload.get("pay_token") or payload.get("transaction_id")
