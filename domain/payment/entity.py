"""
支付领域实体 - 支付聚合根及其关联记录

Amounts are integer minor units (paise, cents) throughout.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
import uuid

from domain.common.exceptions import DomainValidationException
from domain.payment.status import (
    PaymentLifecycleStatus,
    RefundStatus,
    TERMINAL_LIFECYCLE_STATES,
    normalize_lifecycle_status,
)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Payment:
    """
    支付聚合根

    业务规则：
    1. 金额必须大于0（最小货币单位）
    2. 状态只能沿生命周期单向推进（CREATED → PENDING → COMPLETED/FAILED）
    3. 终态（COMPLETED/FAILED）不可再变更
    4. 退款总额不能超过已捕获金额
    """

    id: str
    tenant_id: str
    order_id: str
    provider: str
    environment: str
    status: str
    amount_authorized_minor: int
    currency: str
    amount_captured_minor: int = 0
    amount_refunded_minor: int = 0
    method_kind: Optional[str] = None

    provider_payment_id: Optional[str] = None
    provider_order_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    provider_reference_id: Optional[str] = None

    upi_payer_handle: Optional[str] = None
    upi_utr: Optional[str] = None
    upi_instrument_variant: Optional[str] = None
    receipt_url: Optional[str] = None

    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount_authorized_minor is None or int(self.amount_authorized_minor) <= 0:
            raise DomainValidationException(
                f"Payment amount must be positive: {self.amount_authorized_minor}",
                field="amount_authorized_minor",
            )
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"Invalid currency code: {self.currency}", field="currency")
        self.currency = self.currency.upper()
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def lifecycle(self) -> PaymentLifecycleStatus:
        return normalize_lifecycle_status(self.status)

    def is_final_status(self) -> bool:
        return self.lifecycle in TERMINAL_LIFECYCLE_STATES

    def refundable_amount(self, already_refunded_minor: int = 0) -> int:
        return max(self.amount_captured_minor - already_refunded_minor, 0)


@dataclass
class Refund:
    """退款实体 - Payment 聚合的一部分"""

    id: str
    tenant_id: str
    payment_id: str
    provider: str
    amount_minor: int
    status: str = RefundStatus.PENDING.value
    provider_refund_id: Optional[str] = None
    merchant_refund_id: Optional[str] = None
    original_merchant_order_id: Optional[str] = None
    upi_utr: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount_minor is None or int(self.amount_minor) <= 0:
            raise DomainValidationException(
                f"Refund amount must be positive: {self.amount_minor}",
                field="amount_minor",
            )
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def counts_against_capture(self) -> bool:
        return self.status != RefundStatus.FAILED.value


@dataclass
class Order:
    """Slice of the merchant order the payment core is allowed to update."""

    id: str
    tenant_id: str
    status: str = "pending"
    payment_status: str = "pending"
    payment_failed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass
class WebhookRecord:
    """Append-only inbox row keyed by (provider, dedupe_key)."""

    id: str
    tenant_id: str
    provider: str
    dedupe_key: str
    event_type: Optional[str] = None
    signature_verified: bool = False
    processed: bool = False
    payload: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


@dataclass
class IdempotencyRecord:
    key: str
    scope: str
    tenant_id: str
    response: dict[str, Any]
    expires_at: datetime
    created_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return _ensure_utc(self.expires_at) <= (now or utcnow())


@dataclass
class ProviderConfigRecord:
    """Non-secret provider configuration stored per (tenant, provider, environment)."""

    tenant_id: str
    provider: str
    environment: str
    is_enabled: bool = False
    display_name: Optional[str] = None
    merchant_id: Optional[str] = None
    key_id: Optional[str] = None
    access_code: Optional[str] = None
    app_id: Optional[str] = None
    publishable_key: Optional[str] = None
    salt_index: Optional[int] = None
    account_id: Optional[str] = None
    success_url: Optional[str] = None
    failure_url: Optional[str] = None
    webhook_url: Optional[str] = None
    capabilities: dict[str, bool] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
