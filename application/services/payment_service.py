"""
Application service orchestrating payment use-cases.

Depends only on the adapter factory, the idempotency service and the unit of
work; gateway implementations are registered by the composition root
(API/tasks), keeping dependencies one-way.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from application.dtos.payments import (
    CancelPaymentParams,
    CapturePaymentParams,
    CreatePaymentParams,
    CreateRefundParams,
    HealthCheckResult,
    PaymentMethodInfo,
    PaymentResult,
    RefundResult,
    VerifyPaymentParams,
)
from application.ports.reconciliation import ReconciliationScheduler
from application.services.adapter_factory import AdapterFactory
from application.services.config_resolver import DEFAULT_TENANT
from application.services.idempotency_service import IdempotencyService
from application.services.payment_metadata import ProviderMetadata, extract_provider_metadata
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment import events
from domain.payment.entity import Payment, Refund, utcnow
from domain.payment.events import PaymentEvent
from domain.payment.exceptions import PaymentDomainError, PaymentError, RefundError
from domain.payment.status import (
    CAPTURED_STORAGE_VALUES,
    PaymentLifecycleStatus,
    RefundStatus,
    can_advance_refund,
    can_transition,
    map_gateway_status,
    map_refund_status,
    normalize_lifecycle_status,
    to_storage_status,
)
from shared.codes.payment_codes import TRANSIENT_ERROR_CODES
from shared.upi import mask_identifier


logger = get_logger(__name__)

T = TypeVar("T")

_TERMINAL_REFUND_STATUSES = frozenset(
    {RefundStatus.COMPLETED.value, RefundStatus.FAILED.value, RefundStatus.CANCELLED.value}
)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PaymentDomainError) and exc.error_code in TRANSIENT_ERROR_CODES


def _apply_metadata(payment: Payment, metadata: ProviderMetadata) -> None:
    if metadata.provider_transaction_id:
        payment.provider_transaction_id = metadata.provider_transaction_id
    if metadata.provider_reference_id:
        payment.provider_reference_id = metadata.provider_reference_id
    if metadata.upi_payer_handle:
        payment.upi_payer_handle = metadata.upi_payer_handle
    if metadata.upi_utr:
        payment.upi_utr = metadata.upi_utr
    if metadata.upi_instrument_variant:
        payment.upi_instrument_variant = metadata.upi_instrument_variant
    if metadata.receipt_url:
        payment.receipt_url = metadata.receipt_url


async def apply_refund_status(
    uow: AbstractUnitOfWork,
    refund: Refund,
    status: str,
    *,
    environment: str,
    source: str = "api",
    provider_refund_id: Optional[str] = None,
    upi_utr: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Write a refund status change inside ``uow``.

    Terminal statuses recompute the parent payment's refunded total from
    completed refunds. Returns False when the status does not move forward.
    """
    if not can_advance_refund(refund.status, status):
        return False
    previous = refund.status
    refund.status = status
    if provider_refund_id:
        refund.provider_refund_id = provider_refund_id
    masked_utr = mask_identifier(refund.provider, upi_utr, kind="utr")
    if masked_utr:
        refund.upi_utr = masked_utr
    refund.updated_at = now or utcnow()
    await uow.refund_repository.update(refund)

    if status in _TERMINAL_REFUND_STATUSES:
        payment = await uow.payment_repository.get_for_update(refund.tenant_id, refund.payment_id)
        if payment is not None:
            payment.amount_refunded_minor = await uow.refund_repository.sum_amount(
                payment.id, statuses=[RefundStatus.COMPLETED.value]
            )
            payment.updated_at = refund.updated_at
            await uow.payment_repository.update(payment)

    await uow.event_repository.add(
        PaymentEvent(
            tenant_id=refund.tenant_id,
            provider=refund.provider,
            type=events.REFUND_STATUS_CHANGED,
            environment=environment,
            payment_id=refund.payment_id,
            refund_id=refund.id,
            status=status,
            data={"previous_status": previous, "new_status": status},
            source=source,
        )
    )
    return True


class PaymentsService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        adapter_factory: AdapterFactory,
        idempotency: IdempotencyService,
        *,
        environment: Optional[str] = None,
        default_provider: Optional[str] = None,
        reconciliation: Optional[ReconciliationScheduler] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._adapters = adapter_factory
        self._idempotency = idempotency
        self._environment = environment or payment_settings.default_environment
        self._default_provider = default_provider or payment_settings.default_provider
        self._reconciliation = reconciliation

    @property
    def environment(self) -> str:
        return self._environment

    async def _call_with_timeout(self, operation: Callable[[], Awaitable[T]], provider: str) -> T:
        timeout = payment_settings.operation.timeout_seconds
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise PaymentError(f"Provider call timed out after {timeout}s", "PROVIDER_TIMEOUT", provider) from exc

    async def _execute_with_retry(self, operation: Callable[[], Awaitable[T]], provider: str) -> T:
        """Bounded retry on transient provider failures only."""
        cfg = payment_settings.operation
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(cfg.retry_attempts),
            wait=wait_exponential(multiplier=cfg.backoff_base_ms / 1000, max=cfg.backoff_max_ms / 1000),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("payment_operation_retry", provider=provider, attempt=attempt.retry_state.attempt_number)
                return await self._call_with_timeout(operation, provider)

    async def _get_payment(self, tenant_id: str, payment_id: str) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(tenant_id, payment_id)
        if payment is None:
            raise PaymentError(f"Payment {payment_id} not found", "PAYMENT_NOT_FOUND")
        return payment

    @staticmethod
    def _to_result(payment: Payment) -> PaymentResult:
        return PaymentResult(
            payment_id=payment.id,
            provider_payment_id=payment.provider_payment_id,
            provider_order_id=payment.provider_order_id,
            status=map_gateway_status(payment.status),
            amount_minor=payment.amount_authorized_minor,
            currency=payment.currency,
            provider=payment.provider,
            environment=payment.environment,
            method=PaymentMethodInfo(type=payment.method_kind) if payment.method_kind else None,
            created_at=payment.created_at or utcnow(),
            updated_at=payment.updated_at,
        )

    @staticmethod
    def _refund_to_result(refund: Refund, environment: str) -> RefundResult:
        return RefundResult(
            refund_id=refund.id,
            payment_id=refund.payment_id,
            provider_refund_id=refund.provider_refund_id,
            merchant_refund_id=refund.merchant_refund_id,
            original_merchant_order_id=refund.original_merchant_order_id,
            amount_minor=refund.amount_minor,
            status=map_refund_status(refund.status),
            provider=refund.provider,
            environment=environment,
            reason=refund.reason,
            notes=refund.notes,
            upi_utr=refund.upi_utr,
            created_at=refund.created_at or utcnow(),
            updated_at=refund.updated_at,
        )

    # ------------------------------------------------------------------ create

    async def create_payment(
        self,
        params: CreatePaymentParams,
        tenant_id: Optional[str] = None,
        *,
        provider: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        """Create a payment at the preferred provider (or the first available fallback).

        Runs once per idempotency key; a key is generated when the caller sends none.
        """
        tenant = tenant_id or DEFAULT_TENANT
        key = idempotency_key or params.idempotency_key or self._idempotency.generate_key("payment")
        keyed = params.model_copy(update={"idempotency_key": key})

        return await self._idempotency.execute_with_idempotency(
            key,
            "create_payment",
            lambda: self._create_payment(keyed, tenant, provider),
            tenant,
            result_type=PaymentResult,
        )

    async def _ensure_no_captured_upi_payment(self, tenant_id: str, order_id: str) -> None:
        async with self._uow_factory(readonly=True) as uow:
            existing = await uow.payment_repository.find_captured_for_order(
                tenant_id, order_id, list(CAPTURED_STORAGE_VALUES), method_kind="upi"
            )
        if existing is not None:
            logger.warning(
                "upi_payment_already_captured",
                tenant_id=tenant_id,
                order_id=order_id,
                payment_id=existing.id,
                provider=existing.provider,
            )
            raise PaymentError(
                "A UPI payment for this order has already been captured",
                "UPI_PAYMENT_ALREADY_CAPTURED",
                existing.provider,
                details={"order_id": order_id, "payment_id": existing.id},
            )

    def _enrich_create_params(self, params: CreatePaymentParams) -> CreatePaymentParams:
        base_url = payment_settings.base_url.rstrip("/")
        metadata = {
            **params.metadata,
            "service_version": payment_settings.service_version,
            "environment": self._environment,
        }
        return params.model_copy(
            update={
                "success_url": params.success_url or f"{base_url}/payment-success",
                "failure_url": params.failure_url or f"{base_url}/payment-failed",
                "metadata": metadata,
            }
        )

    async def _create_payment(
        self, params: CreatePaymentParams, tenant_id: str, provider: Optional[str]
    ) -> PaymentResult:
        await self._ensure_no_captured_upi_payment(tenant_id, params.order_id)

        preferred = provider or self._default_provider
        try:
            adapter = await self._adapters.get_adapter_with_fallback(
                preferred,
                self._environment,
                tenant_id,
                method=params.preferred_method,
                currency=params.currency,
            )
            enriched = self._enrich_create_params(params)
            result = await self._execute_with_retry(lambda: adapter.create_payment(enriched), adapter.provider)
            payment = self._build_payment(params, result, tenant_id)

            async with self._uow_factory() as uow:
                await uow.payment_repository.create(payment)
                await uow.event_repository.add(
                    PaymentEvent(
                        tenant_id=tenant_id,
                        provider=payment.provider,
                        type=events.PAYMENT_CREATED,
                        environment=payment.environment,
                        payment_id=payment.id,
                        status=payment.status,
                        data={
                            "amount": payment.amount_authorized_minor,
                            "currency": payment.currency,
                            "method": payment.method_kind,
                            "order_id": payment.order_id,
                        },
                    )
                )
        except Exception as exc:
            logger.error(
                "payment_create_failed",
                tenant_id=tenant_id,
                order_id=params.order_id,
                provider=preferred,
                error=str(exc),
                error_code=getattr(exc, "error_code", None),
            )
            raise PaymentError(
                "Payment creation failed",
                "PAYMENT_CREATION_FAILED",
                getattr(exc, "provider", None) or preferred,
                details={"cause": getattr(exc, "error_code", type(exc).__name__)},
            ) from exc

        logger.info(
            "payment_created",
            tenant_id=tenant_id,
            payment_id=payment.id,
            order_id=payment.order_id,
            provider=payment.provider,
            status=payment.status,
            amount_minor=payment.amount_authorized_minor,
        )
        await self._register_reconciliation(payment, result)
        return result

    def _build_payment(self, params: CreatePaymentParams, result: PaymentResult, tenant_id: str) -> Payment:
        now = utcnow()
        metadata = extract_provider_metadata(result.provider_data, result.provider)
        payment = Payment(
            id=result.payment_id,
            tenant_id=tenant_id,
            order_id=params.order_id,
            provider=result.provider,
            environment=result.environment or self._environment,
            status=to_storage_status(result.status.value),
            amount_authorized_minor=result.amount_minor or params.amount_minor,
            currency=result.currency or params.currency,
            method_kind=result.method.type if result.method else params.preferred_method,
            provider_payment_id=result.provider_payment_id,
            provider_order_id=result.provider_order_id,
            idempotency_key=params.idempotency_key,
            metadata=dict(params.metadata),
            created_at=now,
            updated_at=now,
        )
        _apply_metadata(payment, metadata)
        if not payment.upi_instrument_variant and result.instrument.instrument_variant:
            payment.upi_instrument_variant = result.instrument.instrument_variant
        return payment

    async def _register_reconciliation(self, payment: Payment, result: PaymentResult) -> None:
        if self._reconciliation is None or payment.method_kind != "upi" or payment.is_final_status():
            return
        try:
            await self._reconciliation.register_job(
                tenant_id=payment.tenant_id,
                payment_id=payment.id,
                order_id=payment.order_id,
                provider=payment.provider,
                provider_reference=payment.provider_order_id or payment.provider_payment_id,
                expires_at=result.instrument.expires_at,
            )
        except Exception as exc:
            # the payment row is committed; the poller can be re-registered later
            logger.warning("reconciliation_register_failed", payment_id=payment.id, error=str(exc))

    # ------------------------------------------------------------ lifecycle

    async def _apply_result(
        self,
        tenant_id: str,
        payment_id: str,
        result: PaymentResult,
        event_type: str,
        event_data: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Apply a provider result under a row lock; disallowed transitions write nothing."""
        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.get_for_update(tenant_id, payment_id)
            if payment is None:
                return False

            target = normalize_lifecycle_status(result.status.value)
            if not can_transition(payment.lifecycle, target):
                logger.info(
                    "payment_transition_skipped",
                    payment_id=payment.id,
                    current=payment.status,
                    requested=result.status.value,
                )
                return False

            previous = payment.status
            payment.status = to_storage_status(result.status.value)
            if result.method:
                payment.method_kind = result.method.type
            payment.provider_payment_id = result.provider_payment_id or payment.provider_payment_id
            payment.provider_order_id = result.provider_order_id or payment.provider_order_id
            if target is PaymentLifecycleStatus.COMPLETED:
                payment.amount_captured_minor = result.amount_minor or payment.amount_authorized_minor
            if target is PaymentLifecycleStatus.FAILED and result.error:
                payment.failure_code = result.error.code
                payment.failure_message = result.error.message
            _apply_metadata(payment, extract_provider_metadata(result.provider_data, payment.provider))
            payment.updated_at = utcnow()
            await uow.payment_repository.update(payment)

            await uow.event_repository.add(
                PaymentEvent(
                    tenant_id=tenant_id,
                    provider=payment.provider,
                    type=event_type,
                    environment=payment.environment,
                    payment_id=payment.id,
                    status=payment.status,
                    data={
                        "previous_status": previous,
                        "new_status": payment.status,
                        "method": payment.method_kind,
                        **(event_data or {}),
                    },
                )
            )
            if target is PaymentLifecycleStatus.COMPLETED:
                await uow.order_repository.mark_paid(tenant_id, payment.order_id)

        logger.info("payment_status_updated", payment_id=payment_id, previous=previous, current=payment.status)
        return True

    async def get_payment(self, payment_id: str, tenant_id: Optional[str] = None) -> PaymentResult:
        return self._to_result(await self._get_payment(tenant_id or DEFAULT_TENANT, payment_id))

    async def verify_payment(self, params: VerifyPaymentParams, tenant_id: Optional[str] = None) -> PaymentResult:
        """Re-query the provider and apply the answer through the lifecycle rules.

        A payment the provider never acknowledged is answered from storage.
        """
        tenant = tenant_id or DEFAULT_TENANT
        payment = await self._get_payment(tenant, params.payment_id)
        reference = params.provider_payment_id or payment.provider_payment_id or payment.provider_order_id
        if not reference:
            return self._to_result(payment)

        try:
            adapter = await self._adapters.create_adapter(payment.provider, payment.environment, tenant)
            verify_params = VerifyPaymentParams(
                payment_id=payment.id, provider_payment_id=reference, provider_data=params.provider_data
            )
            result = await self._execute_with_retry(lambda: adapter.verify_payment(verify_params), payment.provider)
            await self._apply_result(tenant, payment.id, result, events.PAYMENT_VERIFIED)
        except Exception as exc:
            logger.error("payment_verify_failed", payment_id=payment.id, provider=payment.provider, error=str(exc))
            raise PaymentError(
                "Payment verification failed",
                "PAYMENT_VERIFICATION_FAILED",
                payment.provider,
                details={"cause": getattr(exc, "error_code", type(exc).__name__)},
            ) from exc
        return result

    async def capture_payment(
        self,
        params: CapturePaymentParams,
        tenant_id: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        tenant = tenant_id or DEFAULT_TENANT
        if idempotency_key:
            return await self._idempotency.execute_with_idempotency(
                idempotency_key,
                "capture_payment",
                lambda: self._capture_payment(params, tenant),
                tenant,
                result_type=PaymentResult,
            )
        return await self._capture_payment(params, tenant)

    async def _capture_payment(self, params: CapturePaymentParams, tenant_id: str) -> PaymentResult:
        payment = await self._get_payment(tenant_id, params.payment_id)
        provider_payment_id = params.provider_payment_id or payment.provider_payment_id
        if not provider_payment_id:
            raise PaymentError("Payment has no provider payment id", "MISSING_PROVIDER_PAYMENT_ID", payment.provider)

        try:
            adapter = await self._adapters.create_adapter(payment.provider, payment.environment, tenant_id)
            capture_params = CapturePaymentParams(
                payment_id=payment.id,
                provider_payment_id=provider_payment_id,
                amount_minor=params.amount_minor or payment.amount_authorized_minor,
            )
            result = await self._execute_with_retry(lambda: adapter.capture_payment(capture_params), payment.provider)
            await self._apply_result(
                tenant_id,
                payment.id,
                result,
                events.PAYMENT_CAPTURED,
                {"amount_captured": result.amount_minor, "requested_amount": params.amount_minor},
            )
        except PaymentDomainError as exc:
            if exc.error_code == "CAPTURE_NOT_SUPPORTED":
                raise
            raise PaymentError(
                "Payment capture failed", "PAYMENT_CAPTURE_FAILED", payment.provider, details={"cause": exc.error_code}
            ) from exc
        except Exception as exc:
            logger.error("payment_capture_failed", payment_id=payment.id, error=str(exc))
            raise PaymentError("Payment capture failed", "PAYMENT_CAPTURE_FAILED", payment.provider) from exc
        return result

    async def cancel_payment(
        self,
        params: CancelPaymentParams,
        tenant_id: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        """Record a checkout the user abandoned.

        Completed payments cannot be cancelled; a payment already cancelled is
        returned unchanged.
        """
        tenant = tenant_id or DEFAULT_TENANT
        if idempotency_key:
            return await self._idempotency.execute_with_idempotency(
                idempotency_key,
                "cancel_payment",
                lambda: self._cancel_payment(params, tenant),
                tenant,
                result_type=PaymentResult,
            )
        return await self._cancel_payment(params, tenant)

    async def _cancel_payment(self, params: CancelPaymentParams, tenant_id: str) -> PaymentResult:
        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.get_for_update(tenant_id, params.payment_id)
            if payment is None:
                raise PaymentError(f"Payment {params.payment_id} not found", "PAYMENT_NOT_FOUND")
            if params.order_id and payment.order_id != params.order_id:
                raise PaymentError(
                    "Payment does not belong to this order",
                    "ORDER_MISMATCH",
                    payment.provider,
                    details={"order_id": params.order_id},
                )

            lifecycle = payment.lifecycle
            if lifecycle is PaymentLifecycleStatus.COMPLETED:
                raise PaymentError("Payment already completed", "PAYMENT_ALREADY_COMPLETED", payment.provider)
            if lifecycle is PaymentLifecycleStatus.FAILED:
                if payment.status == "CANCELLED":
                    return self._to_result(payment)
                raise PaymentError("Payment already failed", "PAYMENT_ALREADY_FAILED", payment.provider)

            now = utcnow()
            previous = payment.status
            payment.status = to_storage_status("cancelled")
            payment.updated_at = now
            await uow.payment_repository.update(payment)
            await uow.event_repository.add(
                PaymentEvent(
                    tenant_id=tenant_id,
                    provider=payment.provider,
                    type=events.CHECKOUT_USER_CANCELLED,
                    environment=payment.environment,
                    payment_id=payment.id,
                    status=payment.status,
                    data={
                        "previous_status": previous,
                        "new_status": payment.status,
                        "order_id": payment.order_id,
                        "reason": params.reason or "user_cancelled_checkout",
                    },
                )
            )
            await uow.order_repository.mark_payment_failed(tenant_id, payment.order_id, now)

        logger.info("payment_cancelled", tenant_id=tenant_id, payment_id=payment.id, order_id=payment.order_id)
        return self._to_result(payment)

    # ----------------------------------------------------------------- refunds

    async def create_refund(
        self,
        params: CreateRefundParams,
        tenant_id: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        tenant = tenant_id or DEFAULT_TENANT
        key = idempotency_key or params.idempotency_key or self._idempotency.generate_key("refund")
        keyed = params.model_copy(update={"idempotency_key": key})
        return await self._idempotency.execute_with_idempotency(
            key,
            "create_refund",
            lambda: self._create_refund(keyed, tenant),
            tenant,
            result_type=RefundResult,
        )

    @staticmethod
    def _captured_amount(payment: Payment) -> int:
        if payment.amount_captured_minor > 0:
            return payment.amount_captured_minor
        if payment.lifecycle is PaymentLifecycleStatus.COMPLETED:
            return payment.amount_authorized_minor
        return 0

    async def _create_refund(self, params: CreateRefundParams, tenant_id: str) -> RefundResult:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(tenant_id, params.payment_id)
            if payment is None:
                raise RefundError(f"Payment {params.payment_id} not found", "PAYMENT_NOT_FOUND")
            provider_payment_id = params.provider_payment_id or payment.provider_payment_id
            if not provider_payment_id:
                raise RefundError("Payment has no provider payment id", "MISSING_PROVIDER_PAYMENT_ID", payment.provider)
            captured = self._captured_amount(payment)
            if captured <= 0:
                raise RefundError("Payment has no captured amount", "NO_CAPTURED_AMOUNT", payment.provider)

            if params.merchant_refund_id:
                existing = await uow.refund_repository.get_by_merchant_refund_id(
                    tenant_id, payment.id, params.merchant_refund_id
                )
                if existing is not None:
                    logger.info("refund_merchant_id_reused", refund_id=existing.id, payment_id=payment.id)
                    return self._refund_to_result(existing, payment.environment)

            non_failed = await uow.refund_repository.sum_amount(
                payment.id, exclude_statuses=[RefundStatus.FAILED.value]
            )
            succeeded = await uow.refund_repository.sum_amount(payment.id, statuses=[RefundStatus.COMPLETED.value])

        requested = params.amount_minor if params.amount_minor is not None else max(captured - non_failed, 0)
        if requested <= 0:
            raise RefundError("Refund amount must be positive", "INVALID_REFUND_AMOUNT", payment.provider)

        projected = non_failed + requested
        if projected > captured:
            details = {
                "requested": requested,
                "captured": captured,
                "current": non_failed,
                "projected": projected,
                "merchant_refund_id": params.merchant_refund_id,
            }
            async with self._uow_factory() as uow:
                await uow.event_repository.add(
                    PaymentEvent(
                        tenant_id=tenant_id,
                        provider=payment.provider,
                        type=events.REFUND_ATTEMPT_FAILED,
                        environment=payment.environment,
                        payment_id=payment.id,
                        data={"reason": "exceeds_captured_amount", **details},
                    )
                )
            logger.warning("refund_exceeds_captured_amount", payment_id=payment.id, **details)
            raise RefundError(
                "Refund exceeds captured amount",
                "REFUND_EXCEEDS_CAPTURED_AMOUNT",
                payment.provider,
                details=details,
            )

        try:
            adapter = await self._adapters.create_adapter(payment.provider, payment.environment, tenant_id)
            refund_params = params.model_copy(
                update={
                    "payment_id": payment.id,
                    "provider_payment_id": provider_payment_id,
                    "amount_minor": requested,
                    "original_merchant_order_id": (
                        params.original_merchant_order_id or payment.provider_order_id or payment.order_id
                    ),
                }
            )
            result = await self._execute_with_retry(lambda: adapter.create_refund(refund_params), payment.provider)

            now = utcnow()
            refund = Refund(
                id=result.refund_id,
                tenant_id=tenant_id,
                payment_id=payment.id,
                provider=payment.provider,
                amount_minor=result.amount_minor or requested,
                status=result.status.value,
                provider_refund_id=result.provider_refund_id,
                merchant_refund_id=result.merchant_refund_id or params.merchant_refund_id,
                original_merchant_order_id=refund_params.original_merchant_order_id,
                upi_utr=mask_identifier(payment.provider, result.upi_utr, kind="utr"),
                reason=params.reason,
                notes=params.notes,
                idempotency_key=params.idempotency_key,
                created_at=now,
                updated_at=now,
            )
            async with self._uow_factory() as uow:
                await uow.refund_repository.create(refund)
                await uow.event_repository.add(
                    PaymentEvent(
                        tenant_id=tenant_id,
                        provider=payment.provider,
                        type=events.REFUND_CREATED,
                        environment=payment.environment,
                        payment_id=payment.id,
                        refund_id=refund.id,
                        status=refund.status,
                        data={
                            "amount": refund.amount_minor,
                            "merchant_refund_id": refund.merchant_refund_id,
                            "reason": refund.reason,
                        },
                    )
                )
                if refund.status == RefundStatus.COMPLETED.value:
                    locked = await uow.payment_repository.get_for_update(tenant_id, payment.id)
                    if locked is not None:
                        locked.amount_refunded_minor = succeeded + refund.amount_minor
                        locked.updated_at = now
                        await uow.payment_repository.update(locked)
        except RefundError:
            raise
        except Exception as exc:
            logger.error("refund_create_failed", payment_id=payment.id, provider=payment.provider, error=str(exc))
            raise RefundError(
                "Refund creation failed",
                "REFUND_CREATION_FAILED",
                payment.provider,
                details={"cause": getattr(exc, "error_code", type(exc).__name__)},
            ) from exc

        logger.info(
            "refund_created",
            refund_id=refund.id,
            payment_id=payment.id,
            amount_minor=refund.amount_minor,
            status=refund.status,
        )
        return result.model_copy(update={"upi_utr": refund.upi_utr})

    async def get_refund_status(self, refund_id: str, tenant_id: Optional[str] = None) -> RefundResult:
        """Poll the provider for a refund and persist any status change."""
        tenant = tenant_id or DEFAULT_TENANT
        async with self._uow_factory(readonly=True) as uow:
            refund = await uow.refund_repository.get_by_id(tenant, refund_id)
            payment = await uow.payment_repository.get_by_id(tenant, refund.payment_id) if refund else None
        if refund is None or payment is None:
            raise RefundError(f"Refund {refund_id} not found", "REFUND_NOT_FOUND")

        try:
            adapter = await self._adapters.create_adapter(refund.provider, payment.environment, tenant)
            result = await self._execute_with_retry(
                lambda: adapter.get_refund_status(
                    refund.id,
                    refund.provider_refund_id,
                    refund.original_merchant_order_id or payment.provider_order_id,
                ),
                refund.provider,
            )
            new_status = result.status.value
            if new_status != refund.status:
                changed = False
                async with self._uow_factory() as uow:
                    locked = await uow.refund_repository.find_by_reference(
                        tenant, refund.provider, refund.id, for_update=True
                    )
                    if locked is not None:
                        changed = await apply_refund_status(
                            uow,
                            locked,
                            new_status,
                            environment=payment.environment,
                            provider_refund_id=result.provider_refund_id,
                            upi_utr=result.upi_utr,
                        )
                if changed:
                    logger.info("refund_status_changed", refund_id=refund.id, previous=refund.status, current=new_status)
        except Exception as exc:
            logger.error("refund_status_check_failed", refund_id=refund.id, error=str(exc))
            raise RefundError(
                "Refund status check failed",
                "REFUND_STATUS_CHECK_FAILED",
                refund.provider,
                details={"cause": getattr(exc, "error_code", type(exc).__name__)},
            ) from exc

        return result.model_copy(
            update={"upi_utr": mask_identifier(refund.provider, result.upi_utr, kind="utr") or refund.upi_utr}
        )

    async def perform_health_check(self, tenant_id: Optional[str] = None) -> dict[str, HealthCheckResult]:
        status = await self._adapters.get_health_status(self._environment, tenant_id)
        logger.info(
            "payment_health_check",
            environment=self._environment,
            healthy=[p for p, r in status.items() if r.healthy],
            unhealthy=[p for p, r in status.items() if not r.healthy],
        )
        return status
