"""
Immutable status history for payments and webhooks.

Every proposed state change gets an append-only audit log entry with:
  - Payment ID (which payment, when known)
  - Webhook ID (which notification triggered it, if any)
  - Action (what happened)
  - Details (source, from/to status, provider response, error messages)
  - Timestamp (UTC)

These records are never modified or deleted. Together they are the
payment's canonical status history.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payment_integration.models.payment import AuditLog

logger = logging.getLogger("payment_integration.audit")


async def log_event(
    session: AsyncSession,
    action: str,
    payment_id: Optional[str] = None,
    webhook_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Create an immutable audit log entry.

    Args:
        session: Database session. The entry is committed with the caller's
            unit of work.
        action: What happened (e.g. "status_changed", "transition_noop",
            "provider_initiated", "webhook_received").
        payment_id: The payment this event relates to.
        webhook_id: The webhook that triggered it.
        details: Arbitrary context (serialized to JSON).

    Returns:
        The created AuditLog record.
    """
    entry = AuditLog(
        payment_id=payment_id,
        webhook_id=webhook_id,
        action=action,
        details=json.dumps(details, default=str) if details else None,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "AUDIT | payment=%s webhook=%s action=%s | %s",
        payment_id or "-",
        webhook_id or "-",
        action,
        json.dumps(details, default=str)[:200] if details else "",
    )
    return entry
