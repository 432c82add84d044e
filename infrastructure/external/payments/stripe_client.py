"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- Calls are module-level helpers with a per-call ``api_key`` so several
  tenants can share one process. The SDK is synchronous; calls run in a
  worker thread via ``asyncio.to_thread``.
- Webhook verification uses ``stripe.Webhook.construct_event`` with the
  ``Stripe-Signature`` header and the configured tolerance.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import stripe

from application.dtos.payments import (
    CapturePaymentParams,
    CreatePaymentParams,
    CreateRefundParams,
    PaymentMethodInfo,
    PaymentResult,
    RefundResult,
    VerifyPaymentParams,
    WebhookEvent,
    WebhookVerifyParams,
    WebhookVerifyResult,
)
from core.settings import payment_settings
from domain.payment.exceptions import PaymentError, WebhookError
from infrastructure.external.payments.base import BasePaymentAdapter, as_dict, pick_string
from infrastructure.external.payments.exceptions import PaymentRecoverableError, ProviderHTTPError


_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def _plain(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _from_epoch(value: Any) -> Optional[datetime]:
    if isinstance(value, int) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


class StripeClient(BasePaymentAdapter):
    provider = "stripe"

    @property
    def api_key(self) -> str:
        return self.secrets.secret_key or ""

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> dict[str, Any]:
        """Run an SDK call off the event loop and map SDK errors onto adapter errors."""
        try:
            result = await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.APIConnectionError as exc:
            raise PaymentRecoverableError(
                "stripe is unreachable", provider=self.provider, error_code="PROVIDER_UNAVAILABLE", cause=exc
            ) from exc
        except stripe.StripeError as exc:
            status = exc.http_status or (429 if isinstance(exc, stripe.RateLimitError) else 400)
            raise ProviderHTTPError(
                f"stripe API returned HTTP {status}",
                provider=self.provider,
                status_code=status,
                provider_code=exc.code,
                body=exc.json_body,
            ) from exc
        return _plain(result)

    def _payment_result(self, intent: dict[str, Any], payment_id: str) -> PaymentResult:
        charge = as_dict(intent.get("latest_charge"))
        details = as_dict(charge.get("payment_method_details"))
        method_type = details.get("type")
        card = as_dict(details.get("card"))
        return PaymentResult(
            payment_id=payment_id,
            provider_payment_id=intent.get("id"),
            provider_order_id=as_dict(intent.get("metadata")).get("order_id"),
            status=self._map_status(intent.get("status")),
            amount_minor=int(intent.get("amount") or 0),
            currency=str(intent.get("currency") or "inr").upper(),
            provider=self.provider,
            environment=self.environment,
            method=PaymentMethodInfo(type=method_type, brand=card.get("brand"), last4=card.get("last4"))
            if method_type
            else None,
            provider_data={
                "clientSecret": intent.get("client_secret"),
                "chargeId": charge.get("id") or intent.get("latest_charge"),
                "receiptUrl": charge.get("receipt_url"),
                "amountReceived": intent.get("amount_received"),
            },
            created_at=_from_epoch(intent.get("created")) or datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
        )

    async def create_payment(self, params: CreatePaymentParams) -> PaymentResult:
        metadata = {k: str(v) for k, v in params.metadata.items() if v is not None}
        metadata.setdefault("order_id", params.order_id)
        options: dict[str, Any] = {
            "amount": params.amount_minor,
            "currency": params.currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if params.description:
            options["description"] = params.description
        if params.customer.email:
            options["receipt_email"] = params.customer.email
        if params.provider_options.get("capture_method") == "manual":
            options["capture_method"] = "manual"
        if params.idempotency_key:
            options["idempotency_key"] = params.idempotency_key

        intent = await self._call(stripe.PaymentIntent.create, **options)
        self._log("stripe_intent_created", intent_id=intent.get("id"))
        result = self._payment_result(intent, intent.get("id") or params.order_id)
        return result.model_copy(update={"provider_order_id": params.order_id})

    async def verify_payment(self, params: VerifyPaymentParams) -> PaymentResult:
        intent_id = pick_string(params.provider_data.get("payment_intent"), params.provider_payment_id)
        if not intent_id:
            raise PaymentError("Missing Stripe PaymentIntent id", "MISSING_VERIFICATION_DATA", self.provider)
        intent = await self._call(stripe.PaymentIntent.retrieve, intent_id, expand=["latest_charge"])
        return self._payment_result(intent, params.payment_id)

    async def capture_payment(self, params: CapturePaymentParams) -> PaymentResult:
        if not params.provider_payment_id:
            raise PaymentError("Missing Stripe PaymentIntent id", "MISSING_PROVIDER_PAYMENT_ID", self.provider)
        kwargs: dict[str, Any] = {"expand": ["latest_charge"]}
        if params.amount_minor:
            kwargs["amount_to_capture"] = params.amount_minor
        intent = await self._call(stripe.PaymentIntent.capture, params.provider_payment_id, **kwargs)
        return self._payment_result(intent, params.payment_id)

    def _refund_result(self, refund: dict[str, Any], **fields: Any) -> RefundResult:
        return RefundResult(
            provider_refund_id=refund.get("id"),
            amount_minor=int(refund.get("amount") or 0),
            status=self._map_refund_status(refund.get("status")),
            provider=self.provider,
            environment=self.environment,
            provider_data={"chargeId": refund.get("charge"), "failureReason": refund.get("failure_reason")},
            created_at=_from_epoch(refund.get("created")) or datetime.now(timezone.utc),
            **fields,
        )

    async def create_refund(self, params: CreateRefundParams) -> RefundResult:
        intent_id = params.provider_payment_id or params.payment_id
        options: dict[str, Any] = {
            "payment_intent": intent_id,
            "metadata": {"payment_id": params.payment_id, "notes": params.notes or ""},
        }
        if params.amount_minor:
            options["amount"] = params.amount_minor
        if params.reason in _REFUND_REASONS:
            options["reason"] = params.reason
        elif params.reason:
            options["reason"] = "requested_by_customer"
        if params.idempotency_key:
            options["idempotency_key"] = params.idempotency_key
        refund = await self._call(stripe.Refund.create, **options)
        return self._refund_result(
            refund,
            refund_id=refund.get("id") or intent_id,
            payment_id=params.payment_id,
            merchant_refund_id=params.merchant_refund_id,
            reason=params.reason,
            notes=params.notes,
        )

    async def get_refund_status(
        self, refund_id: str, provider_refund_id: Optional[str] = None, order_reference: Optional[str] = None
    ) -> RefundResult:
        refund = await self._call(stripe.Refund.retrieve, provider_refund_id or refund_id)
        return self._refund_result(
            refund,
            refund_id=refund_id,
            payment_id=refund.get("payment_intent") or refund_id,
            updated_at=datetime.now(timezone.utc),
        )

    async def _verify_webhook(self, params: WebhookVerifyParams) -> WebhookVerifyResult:
        secret = self.secrets.webhook_secret
        if not secret:
            raise WebhookError("Webhook secret not configured", "WEBHOOK_SECRET_MISSING", self.provider)
        sig = params.signature or params.headers.get("stripe-signature")
        if not sig:
            raise WebhookError("Missing Stripe-Signature header", "MISSING_SIGNATURE", self.provider)
        try:
            event = _plain(
                stripe.Webhook.construct_event(
                    payload=params.body,
                    sig_header=sig,
                    secret=secret,
                    tolerance=payment_settings.webhook.tolerance_seconds,
                )
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookError("Invalid webhook signature", "INVALID_SIGNATURE", self.provider) from exc

        obj = as_dict(as_dict(event.get("data")).get("object"))
        kind = obj.get("object")
        if kind == "refund":
            payment_id = pick_string(obj.get("payment_intent"))
            refund_id = pick_string(obj.get("id"))
            status = self._map_refund_status(obj.get("status")) if obj.get("status") else None
        elif kind == "charge":
            payment_id = pick_string(obj.get("payment_intent"))
            refund_id = None
            status = self._map_status("requires_capture" if obj.get("paid") and not obj.get("captured") else obj.get("status"))
        else:
            payment_id = pick_string(obj.get("id"))
            refund_id = None
            status = self._map_status(obj.get("status")) if obj.get("status") else None

        return WebhookVerifyResult(
            verified=True,
            event=WebhookEvent(
                type=str(event.get("type") or "unknown"),
                payment_id=payment_id,
                refund_id=refund_id,
                status=status,
                data={
                    **obj,
                    "eventId": event.get("id"),
                    "orderId": as_dict(obj.get("metadata")).get("order_id"),
                    "amount": obj.get("amount_received", obj.get("amount")),
                },
            ),
            provider_data={"id": event.get("id"), "type": event.get("type")},
        )

    async def _health_request(self) -> None:
        await self._call(stripe.Balance.retrieve)

    def _config_errors(self) -> list[str]:
        errors = []
        if not self.secrets.secret_key:
            errors.append("Missing Stripe Secret Key")
        if not self.secrets.webhook_secret:
            errors.append("Missing Stripe Webhook Secret")
        return errors
