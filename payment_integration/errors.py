"""
Error taxonomy for the payment integration service.

Every error carries the HTTP status the API layer answers with, so callers
can tell client mistakes (4xx, do not retry) from provider or infrastructure
trouble (5xx, safe to retry).
"""

from typing import Optional


class PaymentIntegrationError(Exception):
    """Base class for all domain errors."""

    http_status = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentIntegrationError):
    """Malformed input, rejected before any external call."""

    http_status = 400
    code = "validation_error"


class LimitExceededError(PaymentIntegrationError):
    """Amount outside the provider's min/max or the user's daily allowance."""

    http_status = 422
    code = "limit_exceeded"

    def __init__(self, message: str, limit_name: str, limit_value: Optional[float] = None):
        super().__init__(message)
        self.limit_name = limit_name
        self.limit_value = limit_value


class NotFoundError(PaymentIntegrationError):
    """Unknown payment, webhook or provider."""

    http_status = 404
    code = "not_found"


class InvalidTransitionError(PaymentIntegrationError):
    """A caller asked for a status change the lifecycle does not allow."""

    http_status = 409
    code = "invalid_transition"

    def __init__(self, current: str, proposed: str):
        super().__init__(f"Cannot move payment from '{current}' to '{proposed}'")
        self.current = current
        self.proposed = proposed


class ProviderTransactionMismatchError(PaymentIntegrationError):
    """A payment already carries a different provider transaction id."""

    http_status = 409
    code = "provider_transaction_mismatch"


class RefundUnsupportedError(PaymentIntegrationError):
    """The provider has no programmatic refunds. Not retriable."""

    http_status = 422
    code = "refund_unsupported"

    def __init__(self, provider: str):
        super().__init__(
            f"Refunds are not supported by {provider}. Please contact support for a manual refund."
        )
        self.provider = provider


class SignatureVerificationError(PaymentIntegrationError):
    """Webhook signature missing or invalid."""

    http_status = 401
    code = "invalid_signature"


class ProviderRequestError(PaymentIntegrationError):
    """Network or API failure talking to a provider."""

    http_status = 502
    code = "provider_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retriable: bool = True,
        provider: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retriable = retriable
        self.provider = provider


class RateLimitError(ProviderRequestError):
    """429 Too Many Requests from a provider."""

    def __init__(
        self,
        message: str = "Rate limited",
        retry_after: Optional[float] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, status_code=429, retriable=True, provider=provider)
        self.retry_after = retry_after


class UnmappedStatusError(ProviderRequestError):
    """A provider reported a status string missing from the adapter's table."""

    code = "unmapped_provider_status"

    def __init__(self, provider: str, native_status: Optional[str]):
        super().__init__(
            f"Unrecognized {provider} status: {native_status!r}",
            retriable=True,
            provider=provider,
        )
        self.native_status = native_status
