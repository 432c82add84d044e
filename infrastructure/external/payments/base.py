"""
Base payment adapter implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement the provider-specific wire format,
signing and webhook verification.
"""
from __future__ import annotations

import hmac
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import payment_settings
from application.dtos.payments import (
    CapturePaymentParams,
    ConfigValidation,
    ErrorInfo,
    HealthCheckResult,
    HealthTests,
    InstrumentMetadata,
    WebhookVerifyParams,
    WebhookVerifyResult,
)
from application.dtos.provider_config import ProviderSecrets, ResolvedConfig
from domain.payment.capabilities import CapabilitySet, get_capabilities, merge_capabilities
from domain.payment.exceptions import PaymentError, WebhookError
from domain.payment.status import PaymentStatus, RefundStatus, map_gateway_status, map_refund_status
from infrastructure.external.payments.exceptions import ProviderHTTPError, PaymentRecoverableError
from shared.codes.payment_codes import PROVIDER_REFUND_STATUS_TO_INTERNAL, PROVIDER_STATUS_TO_INTERNAL
from shared.upi import mask_identifier, normalize_upi_instrument_variant


logger = get_logger(__name__)


def pick_string(*values: Any) -> Optional[str]:
    """First non-blank string among ``values``, stripped."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


class BasePaymentAdapter:
    provider: str = "base"

    def __init__(
        self,
        config: ResolvedConfig,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.environment = config.environment
        self._timeouts_cfg = timeouts or payment_settings.timeouts.model_dump()
        self._retry_cfg = retry or {"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def secrets(self) -> ProviderSecrets:
        if self.config.secrets is None:
            return ProviderSecrets(provider=self.provider, environment=self.environment, environment_prefix="")
        return self.config.secrets

    @property
    def base_url(self) -> str:
        return ""

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        data: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        auth: Optional[httpx.Auth | tuple[str, str]] = None,
    ) -> Any:
        """Send one request; transport failures retry, non-2xx raise ``ProviderHTTPError``."""
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        async def send() -> httpx.Response:
            async with self.client() as c:
                return await c.request(method, url, json=json, data=data, params=params, headers=headers, auth=auth)

        try:
            response = await self._retry(send)
        except httpx.TimeoutException as exc:
            raise PaymentRecoverableError(
                f"{self.provider} request timed out", provider=self.provider, cause=exc
            ) from exc
        except httpx.TransportError as exc:
            raise PaymentRecoverableError(
                f"{self.provider} is unreachable",
                provider=self.provider,
                error_code="PROVIDER_UNAVAILABLE",
                cause=exc,
            ) from exc

        body = self._parse_body(response)
        self._log("provider_response", method=method, path=path, status_code=response.status_code)
        if response.is_error:
            raise ProviderHTTPError(
                f"{self.provider} API returned HTTP {response.status_code}",
                provider=self.provider,
                status_code=response.status_code,
                provider_code=self._provider_code(body),
                body=body,
            )
        return body

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _provider_code(body: Any) -> Optional[str]:
        if not isinstance(body, dict):
            return None
        error = body.get("error")
        if isinstance(error, dict):
            return pick_string(error.get("code"), error.get("type"))
        return pick_string(body.get("code"), body.get("error_code"), body.get("errorCode"))

    # Status mapping
    def _map_status(self, provider_status: Any) -> PaymentStatus:
        return map_gateway_status(provider_status, PROVIDER_STATUS_TO_INTERNAL.get(self.provider))

    def _map_refund_status(self, provider_status: Any) -> RefundStatus:
        return map_refund_status(provider_status, PROVIDER_REFUND_STATUS_TO_INTERNAL.get(self.provider))

    @staticmethod
    def _constant_time_equals(provided: Optional[str], expected: Optional[str]) -> bool:
        if not provided or not expected:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))

    def _build_instrument(
        self,
        *,
        intent_url: Optional[str] = None,
        qr_payload: Optional[str] = None,
        utr: Optional[str] = None,
        payer_handle: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        variant: Optional[str] = None,
    ) -> InstrumentMetadata:
        return InstrumentMetadata(
            intent_url=intent_url,
            qr_payload=qr_payload,
            masked_utr=mask_identifier(self.provider, utr, kind="utr"),
            payer_handle=mask_identifier(self.provider, payer_handle, kind="vpa"),
            expires_at=expires_at,
            instrument_variant=normalize_upi_instrument_variant(variant),
        )

    # Contract defaults
    async def capture_payment(self, params: CapturePaymentParams):
        raise PaymentError(
            f"Manual capture is not supported for {self.provider}",
            "CAPTURE_NOT_SUPPORTED",
            self.provider,
        )

    async def verify_webhook(self, params: WebhookVerifyParams) -> WebhookVerifyResult:
        try:
            return await self._verify_webhook(params)
        except WebhookError as exc:
            self._log("webhook_verification_failed", error_code=exc.error_code)
            return WebhookVerifyResult(verified=False, error=ErrorInfo(code=exc.error_code, message=exc.message))
        except ValueError as exc:
            self._log("webhook_verification_failed", error_code="WEBHOOK_VERIFICATION_FAILED")
            return WebhookVerifyResult(
                verified=False,
                error=ErrorInfo(code="WEBHOOK_VERIFICATION_FAILED", message=str(exc)),
            )

    async def _verify_webhook(self, params: WebhookVerifyParams) -> WebhookVerifyResult:
        raise NotImplementedError

    async def health_check(self) -> HealthCheckResult:
        started = time.perf_counter()
        healthy = False
        tests = HealthTests()
        error: Optional[ErrorInfo] = None
        try:
            await self._health_request()
            healthy = True
            tests = HealthTests(connectivity=True, authentication=True, api_access=True)
        except ProviderHTTPError as exc:
            if exc.is_auth_error:
                tests = HealthTests(connectivity=True)
                error = ErrorInfo(code="AUTHENTICATION_FAILED", message=exc.message)
            elif exc.status_code < 500:
                # health check ids are synthetic; a 4xx still proves auth went through
                healthy = True
                tests = HealthTests(connectivity=True, authentication=True, api_access=False)
            else:
                tests = HealthTests(connectivity=True, authentication=True)
                error = ErrorInfo(code=exc.error_code, message=exc.message)
        except PaymentRecoverableError as exc:
            error = ErrorInfo(code=exc.error_code, message=exc.message)
        except PaymentError as exc:
            tests = HealthTests(connectivity=True)
            error = ErrorInfo(code=exc.error_code, message=exc.message)
        return HealthCheckResult(
            provider=self.provider,
            environment=self.environment,
            healthy=healthy,
            response_time_ms=round((time.perf_counter() - started) * 1000, 2),
            tests=tests,
            error=error,
        )

    async def _health_request(self) -> None:
        raise NotImplementedError

    @property
    def capabilities(self) -> CapabilitySet:
        """Registry capabilities with the tenant overrides from stored config applied."""
        return merge_capabilities(get_capabilities(self.provider), self.config.capabilities)

    def get_supported_methods(self) -> list[str]:
        return [m.value for m in self.capabilities.supported_methods]

    def get_supported_currencies(self) -> list[str]:
        return list(self.capabilities.supported_currencies)

    def validate_config(self) -> ConfigValidation:
        errors = self._config_errors()
        return ConfigValidation(valid=not errors, errors=errors)

    def _config_errors(self) -> list[str]:
        return []

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            environment=self.environment,
            **kwargs,
        )
