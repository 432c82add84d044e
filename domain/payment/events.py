"""
Payment audit events.

Every money-relevant fact (creation, verification, refunds, webhook outcomes)
is appended to ``payment_events``. Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional
import uuid


EventSource = Literal["api", "webhook", "system"]


@dataclass
class PaymentEvent:
    tenant_id: str
    provider: str
    type: str
    environment: str = "test"
    payment_id: Optional[str] = None
    refund_id: Optional[str] = None
    status: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    source: EventSource = "api"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# Event type names
PAYMENT_CREATED = "payment_created"
PAYMENT_VERIFIED = "payment_verified"
PAYMENT_CAPTURED = "payment_captured"
CHECKOUT_USER_CANCELLED = "checkout.user_cancelled"
REFUND_CREATED = "refund_created"
REFUND_ATTEMPT_FAILED = "refund_attempt_failed"
REFUND_STATUS_CHANGED = "refund_status_changed"
WEBHOOK_STATUS_APPLIED = "webhook.status_applied"
