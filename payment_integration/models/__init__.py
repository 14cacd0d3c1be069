from payment_integration.models.enums import (
    EventType,
    PaymentMethodType,
    PaymentStatus,
    PaymentType,
    ProviderName,
    WebhookStatus,
)
from payment_integration.models.payment import AuditLog, Base, Payment, PaymentEvent, Webhook

__all__ = [
    "Base",
    "Payment",
    "Webhook",
    "AuditLog",
    "PaymentEvent",
    "EventType",
    "PaymentMethodType",
    "PaymentStatus",
    "PaymentType",
    "ProviderName",
    "WebhookStatus",
]
