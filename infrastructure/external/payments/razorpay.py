"""
Razorpay adapter (orders + payments API, HTTP Basic auth with key id/secret).

Checkout runs on the client with the returned order id; verification either
checks the checkout signature (``order_id|payment_id``) or re-queries by id.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Optional

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
from domain.payment.exceptions import PaymentError, RefundError, WebhookError
from infrastructure.external.payments.base import BasePaymentAdapter, as_dict, pick_string


_KNOWN_METHODS = {"card", "upi", "netbanking", "wallet", "emi", "paylater"}


def _from_epoch(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


class RazorpayAdapter(BasePaymentAdapter):
    provider = "razorpay"

    @property
    def base_url(self) -> str:
        return "https://api.razorpay.com/v1"

    @property
    def _auth(self) -> tuple[str, str]:
        return (self.config.key_id or "", self.secrets.key_secret or "")

    async def _call(self, method: str, path: str, json: Any = None, params: Optional[dict] = None) -> dict[str, Any]:
        return as_dict(await self._request(method, path, json=json, params=params, auth=self._auth))

    def _payment_result(self, payment: dict[str, Any], payment_id: str) -> PaymentResult:
        method = payment.get("method")
        card = as_dict(payment.get("card"))
        acquirer = as_dict(payment.get("acquirer_data"))
        return PaymentResult(
            payment_id=payment_id,
            provider_payment_id=payment.get("id"),
            provider_order_id=payment.get("order_id"),
            status=self._map_status(payment.get("status")),
            amount_minor=int(payment.get("amount") or 0),
            currency=(payment.get("currency") or "INR").upper(),
            provider=self.provider,
            environment=self.environment,
            method=PaymentMethodInfo(
                type=method if method in _KNOWN_METHODS else "card",
                brand=pick_string(card.get("network"), payment.get("wallet"), payment.get("bank")),
                last4=card.get("last4"),
            )
            if method
            else None,
            instrument=self._build_instrument(
                utr=pick_string(acquirer.get("rrn"), acquirer.get("upi_transaction_id")),
                payer_handle=pick_string(payment.get("vpa")),
                variant="UPI_COLLECT" if method == "upi" and payment.get("vpa") else None,
            ),
            provider_data={
                "razorpayPaymentId": payment.get("id"),
                "razorpayOrderId": payment.get("order_id"),
                "captured": payment.get("captured"),
                "errorCode": payment.get("error_code"),
            },
            created_at=_from_epoch(payment.get("created_at")) or datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
        )

    async def create_payment(self, params: CreatePaymentParams) -> PaymentResult:
        notes = {"orderId": params.order_id}
        notes.update({k: str(v) for k, v in params.metadata.items() if v is not None})
        order = await self._call(
            "POST",
            "/orders",
            json={
                "amount": params.amount_minor,
                "currency": params.currency,
                "receipt": params.order_id,
                "notes": notes,
                "payment_capture": 1,
            },
        )
        order_id = order.get("id")
        self._log("razorpay_order_created", razorpay_order_id=order_id)
        return PaymentResult(
            payment_id=order_id or params.order_id,
            provider_payment_id=order_id,
            provider_order_id=order_id,
            status=self._map_status(order.get("status")),
            amount_minor=int(order.get("amount") or params.amount_minor),
            currency=(order.get("currency") or params.currency).upper(),
            provider=self.provider,
            environment=self.environment,
            provider_data={
                "razorpayOrderId": order_id,
                "keyId": self.config.key_id,
                "checkoutOptions": {
                    "key": self.config.key_id,
                    "amount": order.get("amount"),
                    "currency": order.get("currency"),
                    "description": params.description or f"Payment for order {params.order_id}",
                    "order_id": order_id,
                    "prefill": {
                        "name": params.customer.name,
                        "email": params.customer.email,
                        "contact": params.customer.phone,
                    },
                    "notes": notes,
                },
            },
        )

    def verify_checkout_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = hmac.new(
            (self.secrets.key_secret or "").encode("utf-8"),
            f"{order_id}|{payment_id}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return self._constant_time_equals(signature, expected)

    async def verify_payment(self, params: VerifyPaymentParams) -> PaymentResult:
        data = params.provider_data
        payment_id = pick_string(data.get("razorpay_payment_id"), data.get("razorpayPaymentId"))
        order_id = pick_string(data.get("razorpay_order_id"), data.get("razorpayOrderId"))
        signature = pick_string(data.get("razorpay_signature"), data.get("razorpaySignature"))
        if signature:
            if not (payment_id and order_id):
                raise PaymentError("Missing Razorpay verification parameters", "MISSING_VERIFICATION_DATA", self.provider)
            if not self.verify_checkout_signature(order_id, payment_id, signature):
                raise PaymentError("Invalid Razorpay signature", "INVALID_SIGNATURE", self.provider)

        reference = payment_id or params.provider_payment_id
        if not reference:
            raise PaymentError("Missing Razorpay payment reference", "MISSING_VERIFICATION_DATA", self.provider)

        if reference.startswith("order_"):
            payments = await self._call("GET", f"/orders/{reference}/payments")
            items = [as_dict(p) for p in payments.get("items") or []]
            if not items:
                order = await self._call("GET", f"/orders/{reference}")
                return PaymentResult(
                    payment_id=params.payment_id,
                    provider_payment_id=reference,
                    provider_order_id=reference,
                    status=self._map_status(order.get("status")),
                    amount_minor=int(order.get("amount") or 0),
                    currency=(order.get("currency") or "INR").upper(),
                    provider=self.provider,
                    environment=self.environment,
                    provider_data={"razorpayOrderId": reference},
                    updated_at=datetime.now(timezone.utc),
                )
            # prefer a captured attempt over the latest one
            captured = [p for p in items if p.get("status") == "captured"]
            payment = captured[0] if captured else max(items, key=lambda p: p.get("created_at") or 0)
        else:
            payment = await self._call("GET", f"/payments/{reference}")
        return self._payment_result(payment, params.payment_id)

    async def capture_payment(self, params: CapturePaymentParams) -> PaymentResult:
        if not params.provider_payment_id:
            raise PaymentError("Missing Razorpay payment id", "MISSING_PROVIDER_PAYMENT_ID", self.provider)
        current = await self._call("GET", f"/payments/{params.provider_payment_id}")
        amount = params.amount_minor or int(current.get("amount") or 0)
        payment = await self._call(
            "POST",
            f"/payments/{params.provider_payment_id}/capture",
            json={"amount": amount, "currency": current.get("currency") or "INR"},
        )
        return self._payment_result(payment, params.payment_id)

    def _refund_result(self, refund: dict[str, Any], **fields: Any) -> RefundResult:
        return RefundResult(
            provider_refund_id=refund.get("id"),
            amount_minor=int(refund.get("amount") or 0),
            status=self._map_refund_status(refund.get("status")),
            provider=self.provider,
            environment=self.environment,
            upi_utr=pick_string(as_dict(refund.get("acquirer_data")).get("rrn")),
            provider_data={"razorpayRefundId": refund.get("id"), "speed": refund.get("speed_processed")},
            created_at=_from_epoch(refund.get("created_at")) or datetime.now(timezone.utc),
            **fields,
        )

    async def create_refund(self, params: CreateRefundParams) -> RefundResult:
        payment_id = params.provider_payment_id or params.payment_id
        payment = await self._call("GET", f"/payments/{payment_id}")
        if payment.get("status") not in ("captured", "authorized"):
            raise RefundError("Payment not eligible for refund", "PAYMENT_NOT_REFUNDABLE", self.provider)
        body: dict[str, Any] = {"notes": {"reason": params.reason or "", "notes": params.notes or ""}}
        if params.amount_minor and params.amount_minor < int(payment.get("amount") or 0):
            body["amount"] = params.amount_minor
        if params.merchant_refund_id:
            body["receipt"] = params.merchant_refund_id
        refund = await self._call("POST", f"/payments/{payment_id}/refund", json=body)
        return self._refund_result(
            refund,
            refund_id=refund.get("id") or payment_id,
            payment_id=params.payment_id,
            merchant_refund_id=params.merchant_refund_id,
            reason=params.reason,
            notes=params.notes,
        )

    async def get_refund_status(
        self, refund_id: str, provider_refund_id: Optional[str] = None, order_reference: Optional[str] = None
    ) -> RefundResult:
        refund = await self._call("GET", f"/refunds/{provider_refund_id or refund_id}")
        return self._refund_result(
            refund,
            refund_id=refund_id,
            payment_id=refund.get("payment_id") or refund_id,
            updated_at=datetime.now(timezone.utc),
        )

    async def _verify_webhook(self, params: WebhookVerifyParams) -> WebhookVerifyResult:
        secret = self.secrets.webhook_secret
        if not secret:
            raise WebhookError("Webhook secret not configured", "WEBHOOK_SECRET_MISSING", self.provider)
        signature = params.signature or params.headers.get("x-razorpay-signature")
        if not signature:
            raise WebhookError("Missing Razorpay signature header", "MISSING_SIGNATURE", self.provider)
        expected = hmac.new(secret.encode("utf-8"), params.body, hashlib.sha256).hexdigest()
        if not self._constant_time_equals(signature.strip(), expected):
            raise WebhookError("Invalid webhook signature", "INVALID_SIGNATURE", self.provider)

        payload = as_dict(json.loads(params.body_text))
        inner = as_dict(payload.get("payload"))
        payment = as_dict(as_dict(inner.get("payment")).get("entity"))
        refund = as_dict(as_dict(inner.get("refund")).get("entity"))
        order = as_dict(as_dict(inner.get("order")).get("entity"))
        entity = payment or refund or order
        acquirer = as_dict(payment.get("acquirer_data"))
        data = dict(entity)
        data.update(
            {
                "eventId": pick_string(params.headers.get("x-razorpay-event-id"), payload.get("id")),
                "orderId": pick_string(payment.get("order_id"), order.get("id")),
                "transactionId": pick_string(payment.get("id")),
                "utr": pick_string(acquirer.get("rrn")),
                "payerHandle": pick_string(payment.get("vpa")),
                "amount": payment.get("amount", entity.get("amount")),
            }
        )
        status = refund.get("status") if refund and not payment else entity.get("status")
        return WebhookVerifyResult(
            verified=True,
            event=WebhookEvent(
                type=pick_string(payload.get("event")) or "unknown",
                payment_id=pick_string(payment.get("id"), refund.get("payment_id"), order.get("id")),
                refund_id=pick_string(refund.get("id")),
                status=(self._map_refund_status(status) if refund and not payment else self._map_status(status))
                if status
                else None,
                data=data,
            ),
            provider_data=payload,
        )

    async def _health_request(self) -> None:
        await self._call("GET", "/payments", params={"count": 1})

    def _config_errors(self) -> list[str]:
        errors = []
        if not self.config.key_id:
            errors.append("Missing Razorpay Key ID")
        if not self.secrets.key_secret:
            errors.append("Missing Razorpay Key Secret")
        if not self.secrets.webhook_secret:
            errors.append("Missing Razorpay Webhook Secret")
        return errors
