"""
Payment DTOs (Pydantic v2) used at application boundaries.

All amounts are integer minor units. Statuses on results are always the
canonical enums from ``domain.payment.status``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

from domain.payment.status import PaymentStatus, RefundStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


class ErrorInfo(BaseModel):
    code: str
    message: str
    description: Optional[str] = None


class CustomerInfo(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class AddressInfo(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class PaymentMethodInfo(BaseModel):
    type: str
    brand: Optional[str] = None
    last4: Optional[str] = None


class InstrumentMetadata(BaseModel):
    """Redirect/QR/instrument payload, funneled into the same names for every provider."""

    intent_url: Optional[str] = None
    qr_payload: Optional[str] = None
    masked_utr: Optional[str] = None
    payer_handle: Optional[str] = None
    expires_at: Optional[datetime] = None
    instrument_variant: Optional[str] = None


class CreatePaymentParams(BaseModel):
    order_id: str = Field(min_length=1)
    amount_minor: int = Field(gt=0)
    currency: str = "INR"
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    billing: Optional[AddressInfo] = None
    shipping: Optional[AddressInfo] = None

    allowed_methods: Optional[list[str]] = None
    preferred_method: Optional[str] = None

    success_url: Optional[str] = None
    failure_url: Optional[str] = None
    cancel_url: Optional[str] = None

    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    provider_options: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _validate_currency(v)


class PaymentResult(BaseModel):
    payment_id: str
    provider_payment_id: Optional[str] = None
    provider_order_id: Optional[str] = None

    status: PaymentStatus
    amount_minor: int
    currency: str

    provider: str
    environment: str

    method: Optional[PaymentMethodInfo] = None
    redirect_url: Optional[str] = None
    qr_code_data: Optional[str] = None
    instrument: InstrumentMetadata = Field(default_factory=InstrumentMetadata)

    provider_data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorInfo] = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


class VerifyPaymentParams(BaseModel):
    payment_id: str
    provider_payment_id: Optional[str] = None
    provider_data: dict[str, Any] = Field(default_factory=dict)


class CapturePaymentParams(BaseModel):
    payment_id: str
    provider_payment_id: Optional[str] = None
    amount_minor: Optional[int] = None


class CreateRefundParams(BaseModel):
    payment_id: str
    provider_payment_id: Optional[str] = None
    # validated by the payments service so the failure is a typed, cacheable refund error
    amount_minor: Optional[int] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None
    merchant_refund_id: Optional[str] = None
    original_merchant_order_id: Optional[str] = None


class RefundResult(BaseModel):
    refund_id: str
    payment_id: str
    provider_refund_id: Optional[str] = None
    merchant_refund_id: Optional[str] = None
    original_merchant_order_id: Optional[str] = None

    amount_minor: int
    status: RefundStatus

    provider: str
    environment: str

    reason: Optional[str] = None
    notes: Optional[str] = None
    upi_utr: Optional[str] = None

    provider_data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorInfo] = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class WebhookVerifyParams(BaseModel):
    provider: str
    environment: str
    headers: dict[str, str]
    body: bytes
    signature: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("headers")
    @classmethod
    def _lower_header_names(cls, v: dict[str, str]) -> dict[str, str]:
        return {str(k).lower(): str(val) for k, val in (v or {}).items()}

    @property
    def body_text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class WebhookEvent(BaseModel):
    type: str
    payment_id: Optional[str] = None
    refund_id: Optional[str] = None
    status: Optional[Union[PaymentStatus, RefundStatus, str]] = None
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookVerifyResult(BaseModel):
    verified: bool
    event: Optional[WebhookEvent] = None
    error: Optional[ErrorInfo] = None
    provider_data: dict[str, Any] = Field(default_factory=dict)


class HealthTests(BaseModel):
    connectivity: bool = False
    authentication: bool = False
    api_access: bool = False


class HealthCheckResult(BaseModel):
    provider: str
    environment: str
    healthy: bool
    response_time_ms: Optional[float] = None
    tests: HealthTests = Field(default_factory=HealthTests)
    error: Optional[ErrorInfo] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ConfigValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class CancelPaymentParams(BaseModel):
    payment_id: str
    order_id: Optional[str] = None
    reason: Optional[str] = None


class WebhookResponse(BaseModel):
    """HTTP status plus body chosen by the webhook router."""

    status_code: int
    body: dict[str, Any]
