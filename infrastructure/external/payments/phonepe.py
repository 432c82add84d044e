"""
PhonePe PG adapter (UPI intent / collect / QR).

Requests carry an ``O-Bearer`` OAuth token from the token manager plus the
``X-VERIFY`` checksum: sha256(payload + path + salt) + "###" + salt index.
PhonePe captures automatically, so manual capture is rejected.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from application.dtos.payments import (
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
from application.dtos.provider_config import DEFAULT_PHONEPE_HOSTS, ResolvedConfig
from core.settings import payment_settings
from domain.payment.exceptions import PaymentError, RefundError, WebhookError
from domain.payment.status import PaymentStatus
from infrastructure.external.payments.base import BasePaymentAdapter, as_dict, pick_string
from infrastructure.external.payments.exceptions import ProviderHTTPError
from infrastructure.external.payments.token_manager import AccessToken, BearerTokenManager, resolve_expiry
from shared.upi import mask_utr


MIN_EXPIRY_SECONDS = 300
MAX_EXPIRY_SECONDS = 3600
DEFAULT_EXPIRY_SECONDS = 900

UPI_INSTRUMENT_TYPES = ("UPI_INTENT", "UPI_COLLECT", "UPI_QR")

_INSTRUMENT_KEYS = (
    "instrument_preference", "instrumentPreference", "instrument_type", "instrumentType",
    "instrument", "upi_flow", "upiFlow", "flow", "mode", "preferred_flow", "preferredFlow",
)
_PAY_PAGE_KEYS = ("pay_page", "payPage", "pay_page_type", "payPageType")
_EXPIRE_AFTER_KEYS = ("expire_after", "expireAfter", "expire_after_seconds", "expireAfterSeconds")
_EXPIRY_KEYS = (
    "expiresAt", "expiry", "expiryTime", "expireAt", "expiryTimestamp",
    "qrExpiresAt", "qrExpiry", "validUntil", "validUpto",
)
_AUTH_PREFIX = re.compile(r"^(?:Bearer|Basic)\s+(.+)$", re.IGNORECASE)
_HEX = re.compile(r"^[0-9a-fA-F]+$")


def _normalize_token(value: str) -> str:
    return re.sub(r"[\s\-]+", "_", value.strip().upper())


def clamp_expire_after(value: Any) -> int:
    """Instrument expiry in seconds, clamped to 300..3600 (default 900)."""
    if isinstance(value, bool) or value is None:
        return DEFAULT_EXPIRY_SECONDS
    try:
        seconds = int(float(value))
    except (TypeError, ValueError):
        return DEFAULT_EXPIRY_SECONDS
    return max(MIN_EXPIRY_SECONDS, min(MAX_EXPIRY_SECONDS, seconds))


def resolve_instrument_type(options: dict[str, Any], preferred: Optional[str] = None) -> str:
    candidates = [options.get(k) for k in _INSTRUMENT_KEYS] + [preferred]
    for candidate in candidates:
        if not isinstance(candidate, str) or not candidate.strip():
            continue
        normalized = _normalize_token(candidate)
        if normalized in ("UPI_INTENT", "INTENT"):
            return "UPI_INTENT"
        if normalized in ("UPI_COLLECT", "COLLECT"):
            return "UPI_COLLECT"
        if normalized in ("UPI_QR", "QR", "QR_CODE"):
            return "UPI_QR"
    return "UPI_COLLECT"


def should_use_pay_page(options: dict[str, Any]) -> bool:
    requested = False
    upi_requested = False
    for key in (*_PAY_PAGE_KEYS, "instrument_preference", "instrumentPreference"):
        value = options.get(key)
        if not isinstance(value, str):
            continue
        normalized = _normalize_token(value)
        if normalized in UPI_INSTRUMENT_TYPES:
            upi_requested = True
        if normalized in ("IFRAME", "PAY_PAGE", "EMBEDDED"):
            requested = True
    return requested and not upi_requested


def parse_expiry(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            try:
                return parse_expiry(datetime.fromisoformat(text.replace("Z", "+00:00")))
            except ValueError:
                return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1_000_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


class PhonePeAdapter(BasePaymentAdapter):
    provider = "phonepe"

    def __init__(self, config: ResolvedConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs) -> None:
        super().__init__(config, transport=transport, **kwargs)
        self.merchant_id = config.merchant_id or ""
        self.salt_index = config.salt_index or 1
        self.default_redirect_url = config.redirect_url
        self.tokens = BearerTokenManager(
            self._fetch_access_token,
            refresh_window_seconds=payment_settings.token.refresh_window_seconds,
            name=f"phonepe:{config.environment}:{config.tenant_id}",
        )

    @property
    def base_url(self) -> str:
        if self.config.phonepe is not None:
            return self.config.phonepe.resolve(self.environment).rstrip("/")
        return DEFAULT_PHONEPE_HOSTS["prod" if self.environment == "live" else "uat"]

    @property
    def client_version(self) -> str:
        return self.secrets.client_version or "1"

    # Auth helpers
    async def _fetch_access_token(self) -> AccessToken:
        body = await self._request(
            "POST",
            "/v3/authorization/oauth/token",
            json={
                "grant_type": "client_credentials",
                "client_id": self.secrets.client_id,
                "client_secret": self.secrets.client_secret,
            },
            headers={"X-CLIENT-ID": self.secrets.client_id or "", "X-CLIENT-VERSION": self.client_version},
        )
        payload = as_dict(body)
        access_token = pick_string(payload.get("accessToken"), payload.get("access_token"))
        if not access_token:
            raise PaymentError("PhonePe token response missing accessToken", "TOKEN_FETCH_FAILED", self.provider)
        now = time.time()
        return AccessToken(
            value=access_token,
            expires_at=resolve_expiry(payload, now, payment_settings.token.default_ttl_seconds),
        )

    def generate_checksum(self, path: str, payload: str = "") -> str:
        digest = hashlib.sha256(f"{payload}{path}{self.secrets.salt or ''}".encode("utf-8")).hexdigest()
        return f"{digest}###{self.salt_index}"

    async def _api_call(self, method: str, path: str, *, payload: Optional[str] = None) -> dict[str, Any]:
        """Authenticated call; ``payload`` is the base64 request, if any."""
        checksum = self.generate_checksum(path, payload or "")

        async def call(token: str) -> Any:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "Authorization": f"O-Bearer {token}",
                "X-CLIENT-ID": self.secrets.client_id or "",
                "X-CLIENT-VERSION": self.client_version,
                "X-VERIFY": checksum,
                "X-MERCHANT-ID": self.merchant_id,
            }
            return await self._request(
                method, path, json={"request": payload} if payload is not None else None, headers=headers
            )

        body = as_dict(await self.tokens.call_with_token(call))
        if not body.get("success"):
            raise PaymentError(
                f"PhonePe rejected the request: {body.get('code') or 'UNKNOWN'}",
                "PROVIDER_REQUEST_FAILED",
                self.provider,
                body,
            )
        return body

    # Payments
    async def create_payment(self, params: CreatePaymentParams) -> PaymentResult:
        options = as_dict(params.provider_options.get("phonepe")) or params.provider_options
        merchant_transaction_id = f"TXN_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9].upper()}"
        expire_after = clamp_expire_after(next((options[k] for k in _EXPIRE_AFTER_KEYS if options.get(k) is not None), None))
        instrument_type = resolve_instrument_type(options, params.preferred_method)
        pay_page = should_use_pay_page(options)
        redirect_url = params.success_url or self.default_redirect_url
        callback_url = pick_string(
            params.metadata.get("phonepe_callback_url"),
            params.metadata.get("callback_url"),
            params.cancel_url,
            params.failure_url,
            params.success_url,
            self.default_redirect_url,
        )

        instrument: dict[str, Any] = {"type": "PAY_PAGE" if pay_page else instrument_type}
        if instrument_type == "UPI_COLLECT" and not pay_page:
            vpa = pick_string(options.get("vpa"), options.get("payer_vpa"), options.get("payerVpa"))
            if vpa:
                instrument["vpa"] = vpa

        request = {
            "merchantTransactionId": merchant_transaction_id,
            "merchantId": self.merchant_id,
            "merchantUserId": params.customer.id or params.order_id,
            "amount": params.amount_minor,
            "redirectUrl": redirect_url,
            "redirectMode": "POST",
            "callbackUrl": callback_url,
            "mobileNumber": params.customer.phone,
            "paymentFlow": {"type": "PG_CHECKOUT"},
            "expireAfter": expire_after,
            "paymentModeConfig": {
                "paymentModes": [
                    {
                        "paymentMode": "UPI",
                        "enabled": True,
                        "paymentInstruments": [
                            {"type": t, "enabled": (not pay_page) or t == instrument_type}
                            for t in UPI_INSTRUMENT_TYPES
                        ],
                    }
                ]
            },
            "paymentInstrument": instrument,
        }
        payload = base64.b64encode(json.dumps(request).encode("utf-8")).decode("ascii")

        body = await self._api_call("POST", "/pg/v1/pay", payload=payload)
        data = as_dict(body.get("data"))
        instrument_response = as_dict(data.get("instrumentResponse"))
        redirect_info = as_dict(instrument_response.get("redirectInfo"))
        intent_url = pick_string(instrument_response.get("intentUrl"), instrument_response.get("intent_url"))
        qr_payload = pick_string(
            instrument_response.get("qrData"),
            instrument_response.get("qrString"),
            instrument_response.get("qrPayload"),
            instrument_response.get("qrCode"),
        )
        expires_at = next(
            (e for e in (parse_expiry(instrument_response.get(k)) for k in _EXPIRY_KEYS) if e is not None),
            None,
        )

        self._log("phonepe_payment_created", merchant_transaction_id=merchant_transaction_id, instrument=instrument["type"])
        return PaymentResult(
            payment_id=merchant_transaction_id,
            provider_payment_id=merchant_transaction_id,
            provider_order_id=pick_string(data.get("transactionId")) or merchant_transaction_id,
            status=PaymentStatus.CREATED,
            amount_minor=params.amount_minor,
            currency="INR",
            provider=self.provider,
            environment=self.environment,
            method=PaymentMethodInfo(type="upi", brand="PhonePe"),
            redirect_url=pick_string(redirect_info.get("url")),
            qr_code_data=qr_payload,
            instrument=self._build_instrument(
                intent_url=intent_url,
                qr_payload=qr_payload,
                expires_at=expires_at,
                variant=instrument_response.get("type") or instrument["type"],
            ),
            provider_data={
                "merchantTransactionId": merchant_transaction_id,
                "transactionId": data.get("transactionId"),
                "instrumentResponse": instrument_response,
                "expireAfterSeconds": expire_after,
                "merchantVpa": pick_string(instrument_response.get("merchantVpa"), instrument_response.get("vpa")),
            },
        )

    async def verify_payment(self, params: VerifyPaymentParams) -> PaymentResult:
        merchant_transaction_id = pick_string(
            params.provider_data.get("merchantTransactionId"),
            params.provider_data.get("merchant_transaction_id"),
            params.provider_payment_id,
        )
        if not merchant_transaction_id:
            raise PaymentError(
                "Missing merchantTransactionId for PhonePe verification",
                "MISSING_VERIFICATION_DATA",
                self.provider,
            )

        body = await self._api_call("GET", f"/pg/v1/status/{self.merchant_id}/{merchant_transaction_id}")
        data = as_dict(body.get("data"))
        instrument = as_dict(data.get("paymentInstrument"))
        utr = pick_string(data.get("utr"), instrument.get("utr"), instrument.get("upiTransactionId"))
        payer = pick_string(instrument.get("vpa"), instrument.get("payerVpa"), data.get("payerVpa"))
        amount = data.get("amount")

        return PaymentResult(
            payment_id=params.payment_id,
            provider_payment_id=merchant_transaction_id,
            provider_order_id=pick_string(data.get("transactionId")),
            status=self._map_status(data.get("state") or "FAILED"),
            amount_minor=amount if isinstance(amount, int) and not isinstance(amount, bool) else 0,
            currency="INR",
            provider=self.provider,
            environment=self.environment,
            method=PaymentMethodInfo(type="upi", brand="PhonePe"),
            instrument=self._build_instrument(utr=utr, payer_handle=payer, variant=instrument.get("type")),
            provider_data={
                "merchantTransactionId": merchant_transaction_id,
                "transactionId": data.get("transactionId"),
                "responseCode": data.get("responseCode"),
                "utr": mask_utr(utr),
                "paymentInstrument": {"type": instrument.get("type")} if instrument else None,
            },
            updated_at=datetime.now(timezone.utc),
        )

    # Refunds
    def _refund_result(self, data: dict[str, Any], **fields: Any) -> RefundResult:
        instrument = as_dict(data.get("paymentInstrument"))
        utr = pick_string(data.get("utr"), data.get("upiTransactionId"), instrument.get("utr"))
        provider_txn_id = pick_string(data.get("transactionId"), data.get("providerReferenceId"))
        provider_data = {
            "transactionId": provider_txn_id,
            "rawState": data.get("state"),
            "responseCode": data.get("responseCode"),
        }
        provider_data.update(fields.pop("provider_data", {}))
        return RefundResult(
            status=self._map_refund_status(data.get("state") or "PENDING"),
            provider=self.provider,
            environment=self.environment,
            provider_refund_id=provider_txn_id,
            upi_utr=mask_utr(utr),
            provider_data=provider_data,
            **fields,
        )

    async def create_refund(self, params: CreateRefundParams) -> RefundResult:
        merchant_refund_id = pick_string(params.merchant_refund_id)
        if not merchant_refund_id:
            raise RefundError("merchantRefundId is required", "MISSING_MERCHANT_REFUND_ID", self.provider)
        original_transaction_id = pick_string(params.provider_payment_id, params.payment_id)
        if not original_transaction_id:
            raise RefundError("Missing PhonePe transaction identifier", "MISSING_PROVIDER_PAYMENT_ID", self.provider)
        original_order_id = params.original_merchant_order_id or params.payment_id

        request = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": merchant_refund_id,
            "merchantRefundId": merchant_refund_id,
            "originalTransactionId": original_transaction_id,
            "originalMerchantOrderId": original_order_id,
            "amount": params.amount_minor,
            "reason": params.reason,
            "message": params.notes,
        }
        payload = base64.b64encode(json.dumps(request).encode("utf-8")).decode("ascii")
        body = await self._api_call("POST", "/pg/v1/payments/v2/refund", payload=payload)
        data = as_dict(body.get("data"))
        amount = data.get("amount")
        return self._refund_result(
            data,
            refund_id=merchant_refund_id,
            payment_id=params.payment_id,
            merchant_refund_id=merchant_refund_id,
            original_merchant_order_id=original_order_id,
            amount_minor=amount if isinstance(amount, int) and not isinstance(amount, bool) else (params.amount_minor or 0),
            reason=params.reason,
            notes=params.notes,
            provider_data={
                "merchantRefundId": merchant_refund_id,
                "originalTransactionId": original_transaction_id,
                "originalMerchantOrderId": original_order_id,
            },
        )

    async def get_refund_status(
        self, refund_id: str, provider_refund_id: Optional[str] = None, order_reference: Optional[str] = None
    ) -> RefundResult:
        body = await self._api_call("GET", f"/pg/v1/status/{self.merchant_id}/{refund_id}")
        data = as_dict(body.get("data"))
        amount = data.get("amount")
        return self._refund_result(
            data,
            refund_id=refund_id,
            payment_id=pick_string(data.get("merchantTransactionId"), data.get("transactionId")) or refund_id,
            merchant_refund_id=refund_id,
            amount_minor=amount if isinstance(amount, int) and not isinstance(amount, bool) else 0,
            updated_at=datetime.now(timezone.utc),
            provider_data={"merchantTransactionId": refund_id},
        )

    # Webhooks
    def compute_webhook_auth_hash(self) -> str:
        creds = f"{self.secrets.webhook_username or ''}:{self.secrets.webhook_password or ''}"
        return hashlib.sha256(creds.encode("utf-8")).hexdigest()

    @staticmethod
    def _authorization_hash(header: Optional[str]) -> Optional[str]:
        if not header or not header.strip():
            return None
        trimmed = header.strip()
        match = _AUTH_PREFIX.match(trimmed)
        return match.group(1).strip() if match else trimmed

    async def _verify_webhook(self, params: WebhookVerifyParams) -> WebhookVerifyResult:
        if not self.secrets.webhook_secret:
            raise WebhookError("Webhook secret not configured", "WEBHOOK_SECRET_MISSING", self.provider)

        signature = params.signature or params.headers.get("x-verify")
        if not signature:
            raise WebhookError("Missing PhonePe signature header", "MISSING_SIGNATURE", self.provider)

        provided = self._authorization_hash(params.headers.get("authorization"))
        if not provided:
            raise WebhookError("Missing webhook authorization header", "MISSING_AUTHORIZATION", self.provider)
        expected = self.compute_webhook_auth_hash()
        if not _HEX.match(provided) or len(provided) != len(expected):
            raise WebhookError("Invalid webhook authorization hash", "INVALID_AUTHORIZATION", self.provider)
        if not self._constant_time_equals(provided.lower(), expected):
            raise WebhookError("Invalid webhook authorization hash", "INVALID_AUTHORIZATION", self.provider)

        signature_hash = signature.split("###", 1)[0].strip().lower()
        expected_signature = hmac.new(
            self.secrets.webhook_secret.encode("utf-8"), params.body, hashlib.sha256
        ).hexdigest()
        if not self._constant_time_equals(signature_hash, expected_signature):
            raise WebhookError("Invalid webhook signature", "INVALID_SIGNATURE", self.provider)

        payload = as_dict(json.loads(params.body_text))
        envelope = as_dict(payload.get("event"))
        event_payload = (
            as_dict(envelope.get("payload")) or as_dict(payload.get("payload")) or as_dict(payload.get("data")) or payload
        )
        event_id = pick_string(envelope.get("id"), payload.get("eventId"), payload.get("id"))
        order_id = pick_string(envelope.get("orderId"), event_payload.get("orderId"), payload.get("orderId"))
        transaction_id = pick_string(
            envelope.get("transactionId"),
            event_payload.get("transactionId"),
            event_payload.get("providerTransactionId"),
            event_payload.get("merchantTransactionId"),
            payload.get("transactionId"),
            payload.get("merchantTransactionId"),
        )
        payment_id = pick_string(
            event_payload.get("merchantTransactionId"),
            event_payload.get("paymentId"),
            event_payload.get("providerPaymentId"),
            order_id,
            transaction_id,
        )
        state = pick_string(event_payload.get("state"), envelope.get("state"), payload.get("state"))
        refund_id = pick_string(event_payload.get("merchantRefundId"), event_payload.get("refundId"))
        status = None
        if state:
            status = self._map_refund_status(state) if refund_id else self._map_status(state)

        return WebhookVerifyResult(
            verified=True,
            event=WebhookEvent(
                type=pick_string(envelope.get("type"), payload.get("type")) or "payment_status_update",
                payment_id=payment_id,
                refund_id=refund_id,
                status=status,
                data={**event_payload, "eventId": event_id, "orderId": order_id, "transactionId": transaction_id},
            ),
            provider_data=payload,
        )

    async def _health_request(self) -> None:
        check_id = f"HEALTH_CHECK_{int(time.time() * 1000)}"
        try:
            await self._api_call("GET", f"/pg/v1/status/{self.merchant_id}/{check_id}")
        except PaymentError as exc:
            # an unknown check id is rejected in-band once auth has passed
            if isinstance(exc, ProviderHTTPError) or exc.error_code != "PROVIDER_REQUEST_FAILED":
                raise

    def _config_errors(self) -> list[str]:
        errors = []
        if not self.merchant_id:
            errors.append("Missing PhonePe Merchant ID")
        if not self.secrets.salt:
            errors.append("Missing PhonePe Salt")
        if self.salt_index < 1 or self.salt_index > 10:
            errors.append("PhonePe Salt Index must be between 1-10")
        if not (self.secrets.client_id and self.secrets.client_secret):
            errors.append("Missing PhonePe OAuth client credentials")
        return errors


__all__ = ["PhonePeAdapter", "clamp_expire_after", "resolve_instrument_type"]
