"""
Payment adapter port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements one adapter
per provider.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CapturePaymentParams,
    ConfigValidation,
    CreatePaymentParams,
    CreateRefundParams,
    HealthCheckResult,
    PaymentResult,
    RefundResult,
    VerifyPaymentParams,
    WebhookVerifyParams,
    WebhookVerifyResult,
)


@runtime_checkable
class PaymentAdapter(Protocol):
    """Uniform contract every gateway adapter satisfies.

    - Results carry canonical statuses; unknown provider statuses map to
      ``processing``.
    - Failures raise typed ``PaymentError``/``RefundError`` with a stable code.
    - ``verify_webhook`` never raises; it returns ``verified=False`` with an
      error code so callers can pick the response deterministically.
    - ``capture_payment`` on auto-capturing providers raises
      ``CAPTURE_NOT_SUPPORTED``.
    """

    provider: str
    environment: str

    async def create_payment(self, params: CreatePaymentParams) -> PaymentResult: ...

    async def verify_payment(self, params: VerifyPaymentParams) -> PaymentResult: ...

    async def capture_payment(self, params: CapturePaymentParams) -> PaymentResult: ...

    async def create_refund(self, params: CreateRefundParams) -> RefundResult: ...

    async def get_refund_status(
        self, refund_id: str, provider_refund_id: Optional[str] = None, order_reference: Optional[str] = None
    ) -> RefundResult: ...

    async def verify_webhook(self, params: WebhookVerifyParams) -> WebhookVerifyResult: ...

    async def health_check(self) -> HealthCheckResult: ...

    def get_supported_methods(self) -> list[str]: ...

    def get_supported_currencies(self) -> list[str]: ...

    def validate_config(self) -> ConfigValidation: ...

    async def aclose(self) -> None: ...
