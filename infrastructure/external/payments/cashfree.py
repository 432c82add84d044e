"""
Cashfree PG adapter (orders API, ``x-client-id``/``x-client-secret`` headers).

Cashfree amounts are major units on the wire; everything returned here is
converted back to minor units.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
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


API_VERSION = "2025-01-01"
_CUSTOMER_ID_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


def to_minor(amount: Any) -> int:
    try:
        return int((Decimal(str(amount)) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        return 0


def to_major(amount_minor: int) -> float:
    return float(Decimal(amount_minor) / 100)


def _parse_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def _detect_method(method: Any) -> str:
    if isinstance(method, dict):
        # payment_method arrives as {"upi": {...}} on payment entities
        method = next(iter(method), "")
    value = str(method or "").lower()
    if value in ("upi", "netbanking", "wallet"):
        return value
    return "card"


class CashfreeAdapter(BasePaymentAdapter):
    provider = "cashfree"

    @property
    def base_url(self) -> str:
        return "https://api.cashfree.com/pg" if self.environment == "live" else "https://sandbox.cashfree.com/pg"

    @property
    def checkout_base_url(self) -> str:
        if self.environment == "live":
            return "https://payments.cashfree.com/order"
        return "https://sandbox.cashfree.com/pg/view/order"

    @property
    def app_id(self) -> str:
        return self.config.app_id or self.config.key_id or ""

    async def _call(self, method: str, path: str, body: Any = None, params: Optional[dict] = None) -> Any:
        headers = {
            "x-client-id": self.app_id,
            "x-client-secret": self.secrets.secret_key or "",
            "x-api-version": API_VERSION,
        }
        return await self._request(method, path, json=body, params=params, headers=headers)

    @staticmethod
    def _customer_id(params: CreatePaymentParams) -> str:
        source = params.customer.id or params.customer.email or params.customer.phone
        if not source:
            return f"cust_{int(time.time() * 1000)}"
        return _CUSTOMER_ID_UNSAFE.sub("_", source)[:50]

    async def create_payment(self, params: CreatePaymentParams) -> PaymentResult:
        if not params.customer.phone:
            raise PaymentError(
                "Customer phone number is required for Cashfree payments",
                "MISSING_CUSTOMER_PHONE",
                self.provider,
            )
        customer = {"customer_id": self._customer_id(params), "customer_phone": params.customer.phone}
        if params.customer.email:
            customer["customer_email"] = params.customer.email
        if params.customer.name:
            customer["customer_name"] = params.customer.name

        request: dict[str, Any] = {
            "order_id": params.order_id,
            "order_amount": to_major(params.amount_minor),
            "order_currency": params.currency,
            "customer_details": customer,
        }
        meta = {}
        if params.success_url:
            meta["return_url"] = params.success_url
        notify_url = pick_string(params.provider_options.get("notify_url"), self.config.webhook_url)
        if notify_url:
            meta["notify_url"] = notify_url
        if meta:
            request["order_meta"] = meta

        order = as_dict(await self._call("POST", "/orders", request))
        session_id = order.get("payment_session_id")
        order_id = order.get("order_id") or params.order_id
        return PaymentResult(
            payment_id=order_id,
            provider_payment_id=order_id,
            provider_order_id=order_id,
            status=self._map_status(order.get("order_status")),
            amount_minor=to_minor(order.get("order_amount")) or params.amount_minor,
            currency=(order.get("order_currency") or params.currency).upper(),
            provider=self.provider,
            environment=self.environment,
            redirect_url=f"{self.checkout_base_url}/{order_id}/{session_id}" if session_id else None,
            provider_data={"paymentSessionId": session_id, "cfOrderId": order.get("cf_order_id")},
            created_at=_parse_time(order.get("created_at")) or datetime.now(timezone.utc),
        )

    async def verify_payment(self, params: VerifyPaymentParams) -> PaymentResult:
        order_id = params.provider_payment_id or params.payment_id
        if not order_id:
            raise PaymentError("Missing Cashfree order identifier", "MISSING_VERIFICATION_DATA", self.provider)
        order = as_dict(await self._call("GET", f"/orders/{order_id}"))
        payments = await self._call("GET", f"/orders/{order_id}/payments")
        payment = as_dict(payments[0]) if isinstance(payments, list) and payments else {}
        upi = as_dict(as_dict(payment.get("payment_method")).get("upi"))
        method = payment.get("payment_group") or payment.get("payment_method")
        return PaymentResult(
            payment_id=params.payment_id,
            provider_payment_id=order.get("order_id") or order_id,
            provider_order_id=order.get("order_id") or order_id,
            status=self._map_status(payment.get("payment_status") or order.get("order_status")),
            amount_minor=to_minor(payment.get("payment_amount") or order.get("order_amount")),
            currency=(order.get("order_currency") or "INR").upper(),
            provider=self.provider,
            environment=self.environment,
            method=PaymentMethodInfo(type=_detect_method(method)) if method else None,
            instrument=self._build_instrument(
                utr=pick_string(payment.get("bank_reference")),
                payer_handle=pick_string(upi.get("upi_id")),
                variant=f"UPI_{upi['channel'].upper()}" if isinstance(upi.get("channel"), str) else None,
            ),
            provider_data={
                "cfPaymentId": payment.get("cf_payment_id"),
                "orderStatus": order.get("order_status"),
                "paymentStatus": payment.get("payment_status"),
            },
            updated_at=datetime.now(timezone.utc),
        )

    async def capture_payment(self, params: CapturePaymentParams) -> PaymentResult:
        order_id = params.provider_payment_id or params.payment_id
        if not order_id:
            raise PaymentError("Missing Cashfree order identifier", "MISSING_PROVIDER_PAYMENT_ID", self.provider)
        body = {"capture_amount": to_major(params.amount_minor)} if params.amount_minor else None
        await self._call("POST", f"/orders/{order_id}/authorization", {"action": "CAPTURE", **(body or {})})
        return await self.verify_payment(VerifyPaymentParams(payment_id=params.payment_id, provider_payment_id=order_id))

    def _refund_result(self, refund: dict[str, Any], **fields: Any) -> RefundResult:
        return RefundResult(
            provider_refund_id=refund.get("cf_refund_id") or refund.get("refund_id"),
            amount_minor=to_minor(refund.get("refund_amount")),
            status=self._map_refund_status(refund.get("refund_status")),
            provider=self.provider,
            environment=self.environment,
            upi_utr=pick_string(refund.get("refund_arn")),
            provider_data={"refundId": refund.get("refund_id"), "refundNote": refund.get("refund_note")},
            created_at=_parse_time(refund.get("created_at")) or datetime.now(timezone.utc),
            **fields,
        )

    async def create_refund(self, params: CreateRefundParams) -> RefundResult:
        order_id = params.provider_payment_id
        if not order_id:
            raise RefundError("Missing Cashfree order identifier", "MISSING_PROVIDER_PAYMENT_ID", self.provider)
        refund_id = params.merchant_refund_id or f"refund_{int(time.time() * 1000)}"
        request: dict[str, Any] = {"refund_id": refund_id, "refund_note": params.reason}
        if params.amount_minor:
            request["refund_amount"] = to_major(params.amount_minor)
        refund = as_dict(await self._call("POST", f"/orders/{order_id}/refunds", request))
        return self._refund_result(
            refund,
            refund_id=refund.get("refund_id") or refund_id,
            payment_id=params.payment_id,
            merchant_refund_id=params.merchant_refund_id,
            original_merchant_order_id=order_id,
            reason=params.reason,
            notes=params.notes,
        )

    async def get_refund_status(
        self, refund_id: str, provider_refund_id: Optional[str] = None, order_reference: Optional[str] = None
    ) -> RefundResult:
        # Cashfree addresses refunds by merchant refund id under their order
        if not order_reference:
            raise RefundError("Missing Cashfree order identifier", "MISSING_PROVIDER_PAYMENT_ID", self.provider)
        path = f"/orders/{order_reference}/refunds/{refund_id}"
        refund = as_dict(await self._call("GET", path))
        return self._refund_result(
            refund,
            refund_id=refund_id,
            payment_id=refund.get("order_id") or "",
            updated_at=datetime.now(timezone.utc),
        )

    def sign_webhook(self, timestamp: str, body: bytes) -> str:
        secret = self.secrets.webhook_secret or self.secrets.secret_key or ""
        digest = hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    async def _verify_webhook(self, params: WebhookVerifyParams) -> WebhookVerifyResult:
        if not (self.secrets.webhook_secret or self.secrets.secret_key):
            raise WebhookError("Webhook secret not configured", "WEBHOOK_SECRET_MISSING", self.provider)
        signature = params.signature or params.headers.get("x-webhook-signature")
        if not signature:
            raise WebhookError("Missing Cashfree signature", "MISSING_SIGNATURE", self.provider)
        timestamp = params.headers.get("x-webhook-timestamp")
        if not timestamp:
            raise WebhookError("Missing Cashfree timestamp", "MISSING_TIMESTAMP", self.provider)
        if not self._constant_time_equals(signature.strip(), self.sign_webhook(timestamp, params.body)):
            raise WebhookError("Invalid webhook signature", "INVALID_SIGNATURE", self.provider)

        payload = as_dict(json.loads(params.body_text))
        data = as_dict(payload.get("data"))
        order = as_dict(data.get("order"))
        payment = as_dict(data.get("payment"))
        refund = as_dict(data.get("refund"))
        upi = as_dict(as_dict(payment.get("payment_method")).get("upi"))
        order_id = pick_string(order.get("order_id"), refund.get("order_id"), data.get("order_id"))
        refund_status = pick_string(refund.get("refund_status"))
        payment_status = pick_string(payment.get("payment_status"), data.get("status"))
        if refund_status:
            status = self._map_refund_status(refund_status)
        elif payment_status:
            status = self._map_status(payment_status)
        else:
            status = None

        amount = payment.get("payment_amount", data.get("payment_amount"))
        return WebhookVerifyResult(
            verified=True,
            event=WebhookEvent(
                type=pick_string(payload.get("type"), payload.get("event")) or "payment.update",
                payment_id=order_id or pick_string(str(payment.get("cf_payment_id") or "")),
                refund_id=pick_string(refund.get("refund_id"), data.get("refund_id")),
                status=status,
                data={
                    **data,
                    "orderId": order_id,
                    "transactionId": pick_string(str(payment.get("cf_payment_id") or "")),
                    "utr": pick_string(payment.get("bank_reference")),
                    "payerHandle": pick_string(upi.get("upi_id")),
                    "amount": to_minor(amount) if amount is not None else None,
                },
            ),
            provider_data=payload,
        )

    async def _health_request(self) -> None:
        await self._call("GET", "/orders", params={"limit": 1})

    def _config_errors(self) -> list[str]:
        errors = []
        if not self.app_id:
            errors.append("Missing Cashfree App ID")
        if not self.secrets.secret_key:
            errors.append("Missing Cashfree Secret Key")
        return errors
