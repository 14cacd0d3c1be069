"""SQLAlchemy models for the payment integration service."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Payment(Base):
    """
    One deposit, withdrawal or cash-out attempt.

    Rows are never deleted. ``status`` only moves along the edges in
    ``engine.state_machine.LEGAL_TRANSITIONS`` and is only written through
    the guarded transition; ``fee_amount`` is frozen at creation and
    ``provider_transaction_id`` is write-once.
    """

    __tablename__ = "payments"

    payment_id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    provider = Column(String(20), nullable=False)
    type = Column(String(20), nullable=False)
    payment_method_type = Column(String(20), nullable=False)
    payment_method_details = Column(JSON, nullable=True)
    description = Column(String(500), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    fee_amount = Column(Numeric(18, 2), nullable=False, default=0)
    fee_currency = Column(String(3), nullable=False, default="USD")

    provider_transaction_id = Column(String(100), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    failure_reason = Column(Text, nullable=True)
    webhook_received = Column(Boolean, nullable=False, default=False)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    last_reconciled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    audit_logs = relationship("AuditLog", back_populates="payment", lazy="raise")


class Webhook(Base):
    """
    One raw inbound provider notification.

    Persisted before any interpretation so a crash mid-handling never loses
    the event. ``(provider, event_id)`` reaches a terminal effect at most once.
    """

    __tablename__ = "webhooks"

    webhook_id = Column(String(36), primary_key=True, default=_new_id)
    provider = Column(String(20), nullable=False)
    event_id = Column(String(200), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(Text, nullable=False)
    signature = Column(String(500), nullable=True)
    provider_transaction_id = Column(String(100), nullable=True)
    payment_id = Column(String(36), nullable=True, index=True)

    status = Column(String(20), nullable=False, default="received", index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    failure_reason = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AuditLog(Base):
    """
    Immutable status-history entry.

    Every proposed transition (applied, no-op or rejected), provider call and
    webhook lifecycle step gets one. Append-only.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String(36), ForeignKey("payments.payment_id"), nullable=True, index=True)
    webhook_id = Column(String(36), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)

    payment = relationship("Payment", back_populates="audit_logs")


class PaymentEvent(Base):
    """
    Outbox row for a downstream notification.

    Written in the same transaction as the terminal status change, then
    published and stamped by the dispatcher. The idempotency key is what the
    ledger de-duplicates on.
    """

    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_payment_event_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String(36), ForeignKey("payments.payment_id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    idempotency_key = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
