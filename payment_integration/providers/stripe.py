"""
Card processor adapter (Stripe API).

Deposits and payments are confirmed PaymentIntents; withdrawals are
Transfers to a connected account. Requests are form-encoded and
authenticated with the secret key. Webhooks are signed with a
timestamped HMAC-SHA256 in the ``Stripe-Signature`` header:

    Stripe-Signature: t=1700000000,v1=<hex hmac of "t.body">
"""

import logging
import time
from decimal import Decimal
from typing import Callable, Optional

import httpx

from payment_integration.errors import ProviderRequestError, UnmappedStatusError, ValidationError
from payment_integration.models.enums import PaymentStatus, PaymentType
from payment_integration.providers.base import (
    CancelResult,
    InitiationResult,
    PaymentAdapter,
    PaymentRequest,
    RefundResult,
    StatusResult,
    WebhookEnvelope,
    WebhookInterpretation,
    hmac_sha256_hex,
    load_json,
    signatures_match,
)

logger = logging.getLogger("payment_integration.providers.stripe")

# Reasons the refunds endpoint accepts; anything else travels in metadata.
REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


class StripeAdapter(PaymentAdapter):
    STATUS_MAP = {
        # PaymentIntent
        "requires_payment_method": PaymentStatus.PENDING,
        "requires_confirmation": PaymentStatus.PENDING,
        "requires_action": PaymentStatus.PENDING,
        "processing": PaymentStatus.PROCESSING,
        "requires_capture": PaymentStatus.PROCESSING,
        "canceled": PaymentStatus.CANCELLED,
        "succeeded": PaymentStatus.COMPLETED,
        # Transfer
        "paid": PaymentStatus.COMPLETED,
        "reversed": PaymentStatus.FAILED,
    }

    # Event types that carry a status change; all others are ignored.
    EVENT_TYPE_MAP = {
        "payment_intent.succeeded": PaymentStatus.COMPLETED,
        "payment_intent.processing": PaymentStatus.PROCESSING,
        "payment_intent.payment_failed": PaymentStatus.FAILED,
        "payment_intent.canceled": PaymentStatus.CANCELLED,
        "charge.refunded": PaymentStatus.REFUNDED,
        "transfer.reversed": PaymentStatus.FAILED,
    }

    signature_header = "Stripe-Signature"
    supports_refunds = True

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        secret_key: str,
        webhook_secret: str,
        base_url: str = "https://api.stripe.com",
        timeout: float = 15.0,
        signature_tolerance: int = 300,
        return_url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(http_client, base_url, timeout)
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._tolerance = signature_tolerance
        self._return_url = return_url
        self._clock = clock

    @property
    def name(self) -> str:
        return "stripe"

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def initiate(self, payment: PaymentRequest, method_details: dict) -> InitiationResult:
        if payment.type == PaymentType.WITHDRAWAL.value:
            return await self._create_transfer(payment, method_details)
        return await self._create_payment_intent(payment, method_details)

    async def _create_payment_intent(self, payment: PaymentRequest, method_details: dict) -> InitiationResult:
        payment_method = method_details.get("payment_method_id")
        if not payment_method:
            raise ValidationError("Card payments require payment_method_details.payment_method_id")

        form = {
            "amount": str(payment.amount_minor),
            "currency": payment.currency.lower(),
            "payment_method": payment_method,
            "confirm": "true",
            "description": payment.description or f"Payment Integration {payment.type}",
            "metadata[payment_id]": payment.payment_id,
            "metadata[user_id]": payment.user_id,
            "metadata[type]": payment.type,
        }
        if method_details.get("customer_id"):
            form["customer"] = method_details["customer_id"]
        if self._return_url:
            form["return_url"] = f"{self._return_url}/payments/{payment.payment_id}/complete"

        response = await self._request(
            "POST",
            "/v1/payment_intents",
            data=form,
            headers=self._headers(idempotency_key=f"pi-{payment.payment_id}"),
        )
        intent = self._json(response, "id")

        try:
            status = self.map_status(intent.get("status"))
        except UnmappedStatusError:
            # Accepted by the rail but in a state we don't know yet.
            # Reconciliation will settle it.
            logger.warning(
                "Payment %s: unmapped PaymentIntent status %r, treating as processing",
                payment.payment_id,
                intent.get("status"),
            )
            status = PaymentStatus.PROCESSING

        return InitiationResult(
            provider_transaction_id=intent["id"],
            status=status,
            metadata={
                "stripe_payment_intent_id": intent["id"],
                "client_secret": intent.get("client_secret"),
            },
        )

    async def _create_transfer(self, payment: PaymentRequest, method_details: dict) -> InitiationResult:
        destination = method_details.get("account_id")
        if not destination:
            raise ValidationError("Card withdrawals require payment_method_details.account_id")

        response = await self._request(
            "POST",
            "/v1/transfers",
            data={
                "amount": str(payment.amount_minor),
                "currency": payment.currency.lower(),
                "destination": destination,
                "description": payment.description or "Payment Integration withdrawal",
                "metadata[payment_id]": payment.payment_id,
                "metadata[user_id]": payment.user_id,
            },
            headers=self._headers(idempotency_key=f"tr-{payment.payment_id}"),
        )
        transfer = self._json(response, "id")
        native = "reversed" if transfer.get("reversed") else "paid"

        return InitiationResult(
            provider_transaction_id=transfer["id"],
            status=self.map_status(native),
            metadata={"stripe_transfer_id": transfer["id"]},
        )

    async def check_status(self, provider_transaction_id: str) -> StatusResult:
        if provider_transaction_id.startswith("tr_"):
            response = await self._request(
                "GET", f"/v1/transfers/{provider_transaction_id}", headers=self._headers()
            )
            transfer = self._json(response)
            native = "reversed" if transfer.get("reversed") else "paid"
            return StatusResult(
                status=self.map_status(native),
                native_status=native,
                failure_reason="Transfer reversed" if native == "reversed" else None,
            )

        response = await self._request(
            "GET", f"/v1/payment_intents/{provider_transaction_id}", headers=self._headers()
        )
        intent = self._json(response)
        native = intent.get("status")
        status = self.map_status(native)
        failure_reason = None

        # A failed confirmation sends the intent back to requires_payment_method
        # with the decline recorded on last_payment_error.
        last_error = intent.get("last_payment_error")
        if native == "requires_payment_method" and last_error:
            status = PaymentStatus.FAILED
            failure_reason = last_error.get("message") or "Payment failed"

        return StatusResult(status=status, native_status=native, failure_reason=failure_reason)

    async def cancel(self, provider_transaction_id: str) -> CancelResult:
        if provider_transaction_id.startswith("tr_"):
            raise ProviderRequestError(
                "Transfers cannot be cancelled once created",
                retriable=False,
                provider=self.name,
            )
        response = await self._request(
            "POST",
            f"/v1/payment_intents/{provider_transaction_id}/cancel",
            headers=self._headers(),
        )
        return CancelResult(status=self.map_status(self._json(response).get("status")))

    async def refund(
        self,
        provider_transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        form = {"payment_intent": provider_transaction_id}
        if amount is not None:
            form["amount"] = str(int((amount * 100).to_integral_value()))
        if reason in REFUND_REASONS:
            form["reason"] = reason
        elif reason:
            form["reason"] = "requested_by_customer"
            form["metadata[refund_reason]"] = reason

        response = await self._request("POST", "/v1/refunds", data=form, headers=self._headers())
        refund = self._json(response, "id")

        if refund.get("status") in ("failed", "canceled"):
            raise ProviderRequestError(
                f"Refund {refund.get('id')} was {refund.get('status')}",
                retriable=False,
                provider=self.name,
            )

        refunded = refund.get("amount")
        return RefundResult(
            refund_id=refund["id"],
            status=PaymentStatus.REFUNDED,
            amount=Decimal(refunded) / 100 if refunded is not None else amount,
        )

    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not self._webhook_secret:
            logger.warning("Stripe webhook secret not configured; rejecting webhook")
            return False
        if not signature_header:
            return False

        timestamp = None
        candidates = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                candidates.append(value)

        if not timestamp or not candidates:
            return False
        try:
            signed_at = int(timestamp)
        except ValueError:
            return False
        if abs(self._clock() - signed_at) > self._tolerance:
            logger.warning("Stripe webhook timestamp outside tolerance: %s", timestamp)
            return False

        expected = hmac_sha256_hex(self._webhook_secret, f"{timestamp}.".encode("utf-8") + raw_payload)
        return any(signatures_match(expected, candidate) for candidate in candidates)

    def parse_envelope(self, raw_payload: bytes) -> WebhookEnvelope:
        event = load_json(raw_payload)
        obj = (event.get("data") or {}).get("object") or {}
        return WebhookEnvelope(
            event_id=str(event["id"]),
            event_type=str(event.get("type", "unknown")),
            provider_transaction_id=_transaction_id(obj),
        )

    def interpret_webhook(self, payload: dict) -> WebhookInterpretation:
        event_type = payload.get("type")
        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        interpretation = WebhookInterpretation(
            status=self.EVENT_TYPE_MAP.get(event_type),
            payment_id=metadata.get("payment_id"),
            provider_transaction_id=_transaction_id(obj),
        )

        if interpretation.status == PaymentStatus.FAILED:
            last_error = obj.get("last_payment_error") or {}
            interpretation.failure_reason = last_error.get("message") or "Payment failed"
        elif interpretation.status == PaymentStatus.CANCELLED:
            interpretation.failure_reason = obj.get("cancellation_reason") or "Payment cancelled"
        elif interpretation.status == PaymentStatus.REFUNDED:
            interpretation.metadata = {
                "refund_amount": str(Decimal(obj.get("amount_refunded", 0)) / 100),
            }

        return interpretation


def _transaction_id(obj: dict) -> Optional[str]:
    """Charges point at their PaymentIntent; everything else is its own id."""
    if obj.get("object") == "charge":
        return obj.get("payment_intent")
    return obj.get("id")
