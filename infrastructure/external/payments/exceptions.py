"""
Exceptions raised by provider adapters, mapped onto the payment error taxonomy.

The raw provider body never becomes the message; it travels in
``provider_error`` for diagnostics only.
"""
from __future__ import annotations

from typing import Any, Optional

from domain.payment.exceptions import PaymentError


class ProviderHTTPError(PaymentError):
    """Non-2xx response from a gateway."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int,
        provider_code: Optional[str] = None,
        body: Any = None,
    ) -> None:
        self.status_code = status_code
        self.provider_code = provider_code
        super().__init__(
            message,
            _error_code_for(status_code),
            provider,
            body,
            details={"status_code": status_code, "provider_code": provider_code},
        )

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)

    @property
    def is_transient(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class PaymentRecoverableError(PaymentError):
    """Transport failure or timeout; safe to retry."""

    def __init__(self, message: str, *, provider: str, error_code: str = "PROVIDER_TIMEOUT", cause: Any = None) -> None:
        super().__init__(message, error_code, provider, repr(cause) if cause is not None else None)


def _error_code_for(status_code: int) -> str:
    if status_code in (401, 403):
        return "PROVIDER_AUTH_FAILED"
    if status_code == 404:
        return "PROVIDER_RESOURCE_NOT_FOUND"
    if status_code == 429:
        return "PROVIDER_RATE_LIMITED"
    if status_code >= 500:
        return "PROVIDER_UNAVAILABLE"
    return "PROVIDER_REQUEST_FAILED"
