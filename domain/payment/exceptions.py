"""
Payment domain errors.

Every error carries a stable, machine-readable ``error_code`` (e.g.
``UPI_PAYMENT_ALREADY_CAPTURED``) alongside the numeric business code used by
the API envelope. Raw provider responses travel in ``provider_error`` and are
never used as the primary message.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import ERROR_CODE_TO_PAYMENT_CODE, PaymentCode


class PaymentDomainError(BusinessException):
    default_code: PaymentCode = PaymentCode.PAYMENT_ERROR
    type_name = "PaymentError"

    def __init__(
        self,
        message: str,
        error_code: str,
        provider: Optional[str] = None,
        provider_error: Any = None,
        *,
        details: Optional[dict] = None,
    ) -> None:
        self.error_code = error_code
        self.provider = provider
        self.provider_error = provider_error
        full_details: dict[str, Any] = {"error_code": error_code}
        if provider:
            full_details["provider"] = provider
        if details:
            full_details.update(details)
        super().__init__(
            code=ERROR_CODE_TO_PAYMENT_CODE.get(error_code, self.default_code),
            message=message,
            error_type=self.type_name,
            details=full_details,
            message_key=f"payments.{error_code.lower()}",
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(error_code={self.error_code!r}, provider={self.provider!r}, message={self.message!r})"


class PaymentError(PaymentDomainError):
    """Gateway call or orchestration failure on the payment path."""


class RefundError(PaymentDomainError):
    default_code = PaymentCode.REFUND_ERROR
    type_name = "RefundError"


class WebhookError(PaymentDomainError):
    """Raised inside verification helpers; adapters convert it to a failed verification result."""

    default_code = PaymentCode.WEBHOOK_ERROR
    type_name = "WebhookError"


class ConfigurationError(BusinessException):
    """Missing, invalid or conflicting provider configuration."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        missing_keys: Optional[Iterable[str]] = None,
        conflicting_fields: Optional[Iterable[str]] = None,
    ) -> None:
        self.provider = provider
        self.missing_keys = list(missing_keys or [])
        self.conflicting_fields = list(conflicting_fields or [])
        details: dict[str, Any] = {}
        if provider:
            details["provider"] = provider
        if self.missing_keys:
            details["missing_keys"] = self.missing_keys
        if self.conflicting_fields:
            details["conflicting_fields"] = self.conflicting_fields
        super().__init__(
            code=PaymentCode.CONFIGURATION_ERROR,
            message=message,
            error_type="ConfigurationError",
            details=details or None,
            message_key="payments.configuration_error",
        )


__all__ = [
    "PaymentDomainError",
    "PaymentError",
    "RefundError",
    "WebhookError",
    "ConfigurationError",
]
