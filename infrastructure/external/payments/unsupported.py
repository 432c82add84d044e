"""
Placeholder adapter for providers that are part of the registry but have no
integration in this service yet (PayU, CCAvenue, Paytm, BillDesk).

Config validation always fails, so the factory never hands one out; direct
use raises ``UNSUPPORTED_PROVIDER``.
"""
from __future__ import annotations

from typing import Optional

from application.dtos.payments import (
    CapturePaymentParams,
    CreatePaymentParams,
    CreateRefundParams,
    ErrorInfo,
    HealthCheckResult,
    PaymentResult,
    RefundResult,
    VerifyPaymentParams,
    WebhookVerifyParams,
    WebhookVerifyResult,
)
from application.dtos.provider_config import ResolvedConfig
from domain.payment.capabilities import DISPLAY_NAMES, parse_provider
from domain.payment.exceptions import PaymentError
from infrastructure.external.payments.base import BasePaymentAdapter


class UnsupportedAdapter(BasePaymentAdapter):
    def __init__(self, config: ResolvedConfig, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self.provider = parse_provider(config.provider).value

    def _unsupported(self) -> PaymentError:
        name = DISPLAY_NAMES[parse_provider(self.provider)]
        return PaymentError(f"{name} integration is not available", "UNSUPPORTED_PROVIDER", self.provider)

    async def create_payment(self, params: CreatePaymentParams) -> PaymentResult:
        raise self._unsupported()

    async def verify_payment(self, params: VerifyPaymentParams) -> PaymentResult:
        raise self._unsupported()

    async def capture_payment(self, params: CapturePaymentParams) -> PaymentResult:
        raise self._unsupported()

    async def create_refund(self, params: CreateRefundParams) -> RefundResult:
        raise self._unsupported()

    async def get_refund_status(
        self, refund_id: str, provider_refund_id: Optional[str] = None, order_reference: Optional[str] = None
    ) -> RefundResult:
        raise self._unsupported()

    async def verify_webhook(self, params: WebhookVerifyParams) -> WebhookVerifyResult:
        error = self._unsupported()
        return WebhookVerifyResult(verified=False, error=ErrorInfo(code=error.error_code, message=error.message))

    async def health_check(self) -> HealthCheckResult:
        error = self._unsupported()
        return HealthCheckResult(
            provider=self.provider,
            environment=self.environment,
            healthy=False,
            error=ErrorInfo(code=error.error_code, message=error.message),
        )

    def _config_errors(self) -> list[str]:
        return [self._unsupported().message]
