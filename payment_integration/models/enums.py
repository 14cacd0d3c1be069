"""Enumerations for the payment integration domain model."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Canonical lifecycle states for a payment, independent of any rail."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    """Direction of money movement."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PAYMENT = "payment"


class PaymentMethodType(str, Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"


class ProviderName(str, Enum):
    """Supported payment rails."""

    STRIPE = "stripe"
    ORANGE_MONEY = "orange_money"
    AFRIMONEY = "afrimoney"


class WebhookStatus(str, Enum):
    """Lifecycle states for an inbound webhook notification."""

    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


class EventType(str, Enum):
    """Downstream notifications published to the ledger."""

    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
