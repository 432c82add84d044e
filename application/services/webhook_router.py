"""
Webhook router: verifies provider callbacks, suppresses replays and applies
the reported status through the payment lifecycle state machine.

Every delivery that reaches verification is persisted to the webhook inbox
before any payment write, so a crash mid-processing still leaves the record
used by the replay check.
"""
from __future__ import annotations

import hashlib
import json
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from application.dtos.payments import WebhookResponse, WebhookVerifyParams, WebhookVerifyResult
from application.services.adapter_factory import AdapterFactory
from application.services.config_resolver import DEFAULT_TENANT, ConfigResolver
from application.services.payment_metadata import (
    extract_captured_amount,
    extract_failure_details,
    extract_provider_metadata,
    pick_string,
)
from application.services.payment_service import apply_refund_status
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment import events
from domain.payment.capabilities import parse_environment, parse_provider
from domain.payment.entity import Payment, WebhookRecord, new_id, utcnow
from domain.payment.events import PaymentEvent
from domain.payment.exceptions import ConfigurationError, WebhookError
from domain.payment.status import (
    PaymentLifecycleStatus,
    can_transition,
    is_payment_status,
    normalize_lifecycle_status,
    normalize_webhook_status,
    refund_status_for_event,
    to_storage_status,
)
from shared.codes.payment_codes import PROVIDER_REFUND_STATUS_TO_INTERNAL


logger = get_logger(__name__)
security_logger = get_logger("security")
audit_logger = get_logger("audit")

_AUTHORIZATION_ERROR_CODES = frozenset({"INVALID_AUTHORIZATION", "MISSING_AUTHORIZATION", "UNAUTHORIZED"})


def _status_value(status: Any) -> Optional[str]:
    if status is None:
        return None
    if isinstance(status, Enum):
        return str(status.value)
    return str(status)


def extract_identifiers(raw_body: bytes) -> dict[str, str]:
    """Event/order/transaction/UTR/reference ids found in a JSON body; empty for anything else."""
    try:
        parsed = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}
    if not isinstance(parsed, dict):
        return {}

    event = parsed.get("event") if isinstance(parsed.get("event"), dict) else {}
    candidates = [
        parsed,
        event,
        event.get("payload"),
        parsed.get("data"),
        parsed.get("payload"),
        parsed.get("payment"),
        parsed.get("transaction"),
        parsed.get("message"),
        parsed.get("response"),
    ]
    sources = [c for c in candidates if isinstance(c, dict)]

    identifiers = {
        "event_id": pick_string(sources, "eventId", "event_id", "id"),
        "order_id": pick_string(sources, "orderId", "order_id", "merchantOrderId", "providerOrderId"),
        "transaction_id": pick_string(
            sources, "transactionId", "providerTransactionId", "pgTransactionId", "merchantTransactionId", "paymentId"
        ),
        "utr": pick_string(sources, "utr", "upiUtr", "upiTransactionId"),
        "reference_id": pick_string(sources, "referenceId", "providerReferenceId", "merchantOrderId"),
    }
    return {k: v for k, v in identifiers.items() if v}


def create_dedupe_key(provider: str, tenant_id: str, raw_body: bytes, identifiers: Mapping[str, str]) -> str:
    """Deterministic sha256 key over tenant, provider, stable identifiers and the body hash."""
    tokens = [tenant_id, provider]
    if identifiers.get("order_id") and identifiers.get("transaction_id"):
        tokens.append(f"order:{identifiers['order_id']}")
        tokens.append(f"txn:{identifiers['transaction_id']}")
    else:
        if identifiers.get("event_id"):
            tokens.append(f"event:{identifiers['event_id']}")
        if identifiers.get("transaction_id"):
            tokens.append(f"txn:{identifiers['transaction_id']}")
    if identifiers.get("utr"):
        tokens.append(f"utr:{identifiers['utr']}")
    if identifiers.get("reference_id"):
        tokens.append(f"ref:{identifiers['reference_id']}")

    content_hash = hashlib.sha256(raw_body).hexdigest()
    material = "|".join(tokens) + f"|{content_hash}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class WebhookRouter:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        adapter_factory: AdapterFactory,
        config_resolver: ConfigResolver,
        *,
        environment: Optional[str] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._adapters = adapter_factory
        self._resolver = config_resolver
        self._environment = parse_environment(environment or payment_settings.default_environment)

    async def process_webhook(
        self,
        provider: str,
        headers: Mapping[str, str],
        raw_body: bytes,
        tenant_id: Optional[str] = None,
    ) -> WebhookResponse:
        """Handle one inbound delivery and choose the HTTP answer.

        404 unknown/disabled provider, 200 ``already_processed`` for replays,
        403 authorization failure, 401 signature failure, 200 ``processed``
        otherwise and 500 on unexpected errors.
        """
        lowered = {str(k).lower(): str(v) for k, v in headers.items()}
        tenant = tenant_id or lowered.get("x-tenant-id") or DEFAULT_TENANT

        try:
            resolved = parse_provider(provider)
        except ConfigurationError:
            logger.warning("webhook_unknown_provider", provider=provider, tenant_id=tenant)
            return WebhookResponse(status_code=404, body={"status": "provider_not_available"})
        if not await self._resolver.is_provider_available(resolved, self._environment, tenant):
            logger.warning("webhook_provider_not_enabled", provider=resolved.value, tenant_id=tenant)
            return WebhookResponse(status_code=404, body={"status": "provider_not_available"})

        identifiers = extract_identifiers(raw_body)
        dedupe_key = create_dedupe_key(resolved.value, tenant, raw_body, identifiers)
        log = logger.bind(provider=resolved.value, tenant_id=tenant, dedupe_key=dedupe_key)

        async with self._uow_factory(readonly=True) as uow:
            existing = await uow.webhook_repository.get_by_dedupe_key(resolved.value, dedupe_key)
        if existing is not None and (existing.processed or existing.error is None):
            await self._record_audit(resolved.value, tenant, "webhook.replayed", {"dedupe_key": dedupe_key, **identifiers})
            log.info("webhook_replayed")
            return WebhookResponse(status_code=200, body={"status": "already_processed"})

        record: Optional[WebhookRecord] = existing
        try:
            adapter = await self._adapters.create_adapter(resolved, self._environment, tenant)
            verify = await adapter.verify_webhook(
                WebhookVerifyParams(
                    provider=resolved.value,
                    environment=self._environment.value,
                    headers=lowered,
                    body=raw_body,
                    signature=lowered.get("x-signature") or lowered.get("signature"),
                )
            )
            if record is None:
                record = await self._store(resolved.value, tenant, dedupe_key, raw_body, identifiers, verify)

            if not verify.verified:
                return await self._reject(resolved.value, tenant, record, verify, identifiers)

            outcome = await self._process_verified(verify, resolved.value, tenant)
            async with self._uow_factory() as uow:
                await uow.webhook_repository.mark_processed(record.id)
            log.info("webhook_processed", **outcome)
            return WebhookResponse(status_code=200, body={"status": "processed", **outcome})
        except Exception as exc:
            log.exception("webhook_processing_failed", error=str(exc))
            await self._store_failure(resolved.value, tenant, dedupe_key, raw_body, identifiers, record, str(exc))
            return WebhookResponse(status_code=500, body={"status": "error", "message": "Webhook processing failed"})

    async def _store(
        self,
        provider: str,
        tenant_id: str,
        dedupe_key: str,
        raw_body: bytes,
        identifiers: Mapping[str, str],
        verify: WebhookVerifyResult,
    ) -> WebhookRecord:
        record = WebhookRecord(
            id=new_id(),
            tenant_id=tenant_id,
            provider=provider,
            dedupe_key=dedupe_key,
            event_type=verify.event.type if verify.event else None,
            signature_verified=verify.verified,
            payload={"body": raw_body.decode("utf-8", errors="replace"), "identifiers": dict(identifiers)},
            created_at=utcnow(),
        )
        async with self._uow_factory() as uow:
            return await uow.webhook_repository.create(record)

    async def _store_failure(
        self,
        provider: str,
        tenant_id: str,
        dedupe_key: str,
        raw_body: bytes,
        identifiers: Mapping[str, str],
        record: Optional[WebhookRecord],
        error: str,
    ) -> None:
        try:
            async with self._uow_factory() as uow:
                if record is None:
                    record = await uow.webhook_repository.create(
                        WebhookRecord(
                            id=new_id(),
                            tenant_id=tenant_id,
                            provider=provider,
                            dedupe_key=dedupe_key,
                            payload={"body": raw_body.decode("utf-8", errors="replace"), "identifiers": dict(identifiers)},
                            error=error,
                            created_at=utcnow(),
                        )
                    )
                else:
                    await uow.webhook_repository.mark_failed(record.id, error)
        except Exception as store_exc:
            logger.error("webhook_failure_store_failed", provider=provider, dedupe_key=dedupe_key, error=str(store_exc))

    async def _reject(
        self,
        provider: str,
        tenant_id: str,
        record: WebhookRecord,
        verify: WebhookVerifyResult,
        identifiers: Mapping[str, str],
    ) -> WebhookResponse:
        code = (verify.error.code if verify.error else "") or ""
        message = verify.error.message if verify.error else None

        if code.upper() in _AUTHORIZATION_ERROR_CODES:
            async with self._uow_factory() as uow:
                await uow.webhook_repository.mark_processed(record.id, error="authorization_invalid")
            security_logger.warning(
                "webhook_auth_failed", provider=provider, tenant_id=tenant_id, dedupe_key=record.dedupe_key, reason=code
            )
            await self._record_audit(
                provider,
                tenant_id,
                "security.webhook.auth_failed",
                {"dedupe_key": record.dedupe_key, "reason": code, **identifiers},
            )
            return WebhookResponse(
                status_code=403,
                body={"status": "authorization_invalid", "message": message or "Invalid webhook authorization"},
            )

        async with self._uow_factory() as uow:
            await uow.webhook_repository.mark_processed(record.id, error="signature_invalid")
        audit_logger.warning(
            "webhook_signature_failed", provider=provider, tenant_id=tenant_id, dedupe_key=record.dedupe_key, reason=code
        )
        await self._record_audit(
            provider, tenant_id, "webhook.signature_failed", {"dedupe_key": record.dedupe_key, "reason": code, **identifiers}
        )
        return WebhookResponse(
            status_code=401,
            body={"status": "signature_invalid", "message": message or "Signature verification failed"},
        )

    async def _record_audit(self, provider: str, tenant_id: str, event_type: str, details: Mapping[str, Any]) -> None:
        data = {k: v for k, v in details.items() if v is not None}
        async with self._uow_factory() as uow:
            await uow.event_repository.add(
                PaymentEvent(
                    tenant_id=tenant_id,
                    provider=provider,
                    type=event_type,
                    environment=self._environment.value,
                    data=data,
                    source="webhook",
                )
            )

    async def _process_verified(self, verify: WebhookVerifyResult, provider: str, tenant_id: str) -> dict[str, Any]:
        event = verify.event
        if event is None:
            raise WebhookError("No event data in verified webhook", "MISSING_EVENT_DATA", provider)

        raw_status = _status_value(event.status)
        payment_updated = False
        refund_updated = False

        if event.refund_id and raw_status:
            refund_status = refund_status_for_event(raw_status, PROVIDER_REFUND_STATUS_TO_INTERNAL.get(provider)).value
            refund_updated = await self.update_refund_status(tenant_id, provider, event.refund_id, refund_status, event.data)
        elif raw_status:
            status = normalize_webhook_status(raw_status)
            references = [event.payment_id, event.data.get("orderId"), event.data.get("transactionId")]
            if status and is_payment_status(status) and any(references):
                payment_updated = await self.update_payment_status(
                    tenant_id, provider, [r for r in references if r], status, event.data, event_type=event.type
                )

        return {"event_type": event.type, "payment_updated": payment_updated, "refund_updated": refund_updated}

    @staticmethod
    async def _find_payment(
        uow: AbstractUnitOfWork, tenant_id: str, provider: str, references: list[str]
    ) -> Optional[Payment]:
        for reference in references:
            payment = await uow.payment_repository.find_by_reference(tenant_id, provider, reference, for_update=True)
            if payment is not None:
                return payment
        return None

    async def update_payment_status(
        self,
        tenant_id: str,
        provider: str,
        references: list[str],
        status: str,
        data: Mapping[str, Any],
        *,
        verified: bool = True,
        event_type: Optional[str] = None,
    ) -> bool:
        """Apply a webhook status to the payment under a row lock.

        Same-state replays and anything out of a terminal state return False
        without writing. COMPLETED promotes the order unless the reported
        amount disagrees with the authorized one; FAILED stamps the order.
        """
        async with self._uow_factory() as uow:
            payment = await self._find_payment(uow, tenant_id, provider, references)
            if payment is None:
                logger.warning("webhook_payment_not_found", provider=provider, tenant_id=tenant_id, references=references)
                return False

            target = normalize_lifecycle_status(status)
            if not can_transition(payment.lifecycle, target):
                logger.info(
                    "webhook_transition_ignored",
                    payment_id=payment.id,
                    current=payment.status,
                    requested=status,
                )
                return False

            now = utcnow()
            previous = payment.status
            payment.status = to_storage_status(status)
            metadata = extract_provider_metadata(data, payment.provider)
            if metadata.provider_payment_id and not payment.provider_payment_id:
                payment.provider_payment_id = metadata.provider_payment_id
            for field_name in (
                "provider_transaction_id",
                "provider_reference_id",
                "upi_payer_handle",
                "upi_utr",
                "upi_instrument_variant",
                "receipt_url",
            ):
                value = getattr(metadata, field_name)
                if value:
                    setattr(payment, field_name, value)

            promote = verified
            audits: list[tuple[str, dict[str, Any]]] = []
            if target is PaymentLifecycleStatus.COMPLETED:
                captured = extract_captured_amount(data)
                if captured is not None and captured != payment.amount_authorized_minor:
                    audits.append(
                        (
                            "webhook.amount_mismatch",
                            {
                                "payment_id": payment.id,
                                "order_id": payment.order_id,
                                "expected_amount_minor": payment.amount_authorized_minor,
                                "received_amount_minor": captured,
                            },
                        )
                    )
                    payment.amount_captured_minor = payment.amount_authorized_minor
                    promote = False
                else:
                    payment.amount_captured_minor = captured if captured is not None else payment.amount_authorized_minor
            elif target is PaymentLifecycleStatus.FAILED:
                failure_code, failure_message = extract_failure_details(data)
                payment.failure_code = failure_code or payment.failure_code
                payment.failure_message = failure_message or payment.failure_message
                await uow.order_repository.mark_payment_failed(tenant_id, payment.order_id, now)
                audits.append(
                    (
                        "webhook.payment_failed",
                        {
                            "payment_id": payment.id,
                            "order_id": payment.order_id,
                            "status": status,
                            "failure_code": failure_code,
                            "failure_message": failure_message,
                            "failed_at": now.isoformat(),
                        },
                    )
                )

            payment.updated_at = now
            await uow.payment_repository.update(payment)
            await uow.event_repository.add(
                PaymentEvent(
                    tenant_id=tenant_id,
                    provider=payment.provider,
                    type=events.WEBHOOK_STATUS_APPLIED,
                    environment=payment.environment,
                    payment_id=payment.id,
                    status=payment.status,
                    data={"previous_status": previous, "new_status": payment.status, "event_type": event_type},
                    source="webhook",
                )
            )
            for audit_type, details in audits:
                await uow.event_repository.add(
                    PaymentEvent(
                        tenant_id=tenant_id,
                        provider=payment.provider,
                        type=audit_type,
                        environment=payment.environment,
                        payment_id=payment.id,
                        data={k: v for k, v in details.items() if v is not None},
                        source="webhook",
                    )
                )
            if target is PaymentLifecycleStatus.COMPLETED and promote:
                await uow.order_repository.mark_paid(tenant_id, payment.order_id)

        for audit_type, details in audits:
            audit_logger.warning(audit_type.replace(".", "_"), provider=provider, tenant_id=tenant_id, **details)
        logger.info("webhook_payment_updated", payment_id=payment.id, previous=previous, current=payment.status)
        return True

    async def update_refund_status(
        self,
        tenant_id: str,
        provider: str,
        refund_reference: str,
        status: str,
        data: Mapping[str, Any],
    ) -> bool:
        async with self._uow_factory() as uow:
            refund = await uow.refund_repository.find_by_reference(tenant_id, provider, refund_reference, for_update=True)
            if refund is None:
                logger.warning("webhook_refund_not_found", provider=provider, refund_reference=refund_reference)
                return False
            return await apply_refund_status(
                uow,
                refund,
                status,
                environment=self._environment.value,
                source="webhook",
                upi_utr=pick_string([data], "utr", "upiUtr"),
            )

    async def get_webhook_stats(self, tenant_id: Optional[str] = None) -> dict[str, Any]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.webhook_repository.get_stats(tenant_id)

    async def cleanup_old_webhooks(self, older_than_days: Optional[int] = None) -> int:
        """Delete inbox rows older than the retention window."""
        days = older_than_days if older_than_days is not None else payment_settings.webhook.retention_days
        cutoff = utcnow() - timedelta(days=days)
        async with self._uow_factory() as uow:
            deleted = await uow.webhook_repository.delete_older_than(cutoff)
        logger.info("webhooks_cleaned", deleted=deleted, older_than_days=days)
        return deleted
