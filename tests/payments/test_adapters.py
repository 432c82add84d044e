import asyncio
import base64
import hashlib
import hmac
import json

import httpx
import pytest
import stripe

from application.dtos.payments import CapturePaymentParams, CreatePaymentParams, VerifyPaymentParams, WebhookVerifyParams
from application.dtos.provider_config import ProviderSecrets, ResolvedConfig
from domain.payment.capabilities import PaymentProvider
from domain.payment.exceptions import PaymentError
from domain.payment.status import PaymentStatus, RefundStatus
from infrastructure.external.payments import build_adapter_registry
from infrastructure.external.payments.cashfree import CashfreeAdapter
from infrastructure.external.payments.phonepe import PhonePeAdapter, clamp_expire_after, resolve_instrument_type
from infrastructure.external.payments.razorpay import RazorpayAdapter
from infrastructure.external.payments.stripe_client import StripeClient
from infrastructure.external.payments.unsupported import UnsupportedAdapter


def _config(provider: str, **fields) -> ResolvedConfig:
    secret_fields = fields.pop("secrets", {})
    return ResolvedConfig(
        provider=provider,
        environment="test",
        tenant_id="default",
        enabled=True,
        is_valid=True,
        secrets=ProviderSecrets(
            provider=provider,
            environment="test",
            environment_prefix=f"PAYAPP_TEST_{provider.upper()}_",
            **secret_fields,
        ),
        **fields,
    )


def _phonepe(**secret_overrides) -> ResolvedConfig:
    secrets = {
        "salt": "salt-key",
        "webhook_secret": "pp_whsec",
        "client_id": "cid",
        "client_secret": "csecret",
        "client_version": "1",
        "webhook_username": "hook",
        "webhook_password": "pass",
        **secret_overrides,
    }
    return _config("phonepe", merchant_id="MERCHANT1", salt_index=1, redirect_url="https://shop/return", secrets=secrets)


def _params(provider: str, headers: dict, body: bytes) -> WebhookVerifyParams:
    return WebhookVerifyParams(provider=provider, environment="test", headers=headers, body=body)


PHONEPE_BODY = json.dumps(
    {
        "event": {
            "id": "evt_pp_1",
            "type": "PAYMENT_SUCCESS",
            "orderId": "OMO123",
            "payload": {"merchantTransactionId": "pay_1", "transactionId": "T123", "state": "COMPLETED", "amount": 1000},
        }
    }
).encode()


def _phonepe_headers(body: bytes = PHONEPE_BODY, **overrides) -> dict:
    signature = hmac.new(b"pp_whsec", body, hashlib.sha256).hexdigest()
    auth = hashlib.sha256(b"hook:pass").hexdigest()
    headers = {"X-VERIFY": f"{signature}###1", "Authorization": f"Bearer {auth}"}
    headers.update(overrides)
    return {k: v for k, v in headers.items() if v is not None}


@pytest.mark.asyncio
async def test_phonepe_webhook_verifies_authorization_and_signature():
    adapter = PhonePeAdapter(_phonepe())

    result = await adapter.verify_webhook(_params("phonepe", _phonepe_headers(), PHONEPE_BODY))

    assert result.verified
    assert result.event.payment_id == "pay_1"
    assert result.event.status == PaymentStatus.CAPTURED
    assert result.event.data["eventId"] == "evt_pp_1"
    assert result.event.data["orderId"] == "OMO123"
    assert result.event.data["transactionId"] == "T123"


@pytest.mark.asyncio
async def test_phonepe_refund_webhook_uses_refund_vocabulary():
    body = json.dumps(
        {"event": {"id": "evt_pp_rf", "type": "REFUND_COMPLETED", "payload": {"merchantRefundId": "rf_1", "state": "COMPLETED"}}}
    ).encode()
    adapter = PhonePeAdapter(_phonepe())

    result = await adapter.verify_webhook(_params("phonepe", _phonepe_headers(body), body))

    assert result.verified
    assert result.event.refund_id == "rf_1"
    assert result.event.status == RefundStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"Authorization": None}, "MISSING_AUTHORIZATION"),
        ({"Authorization": "Basic " + "0" * 64}, "INVALID_AUTHORIZATION"),
        ({"Authorization": "not-a-hash"}, "INVALID_AUTHORIZATION"),
        ({"X-VERIFY": None}, "MISSING_SIGNATURE"),
        ({"X-VERIFY": "deadbeef###1"}, "INVALID_SIGNATURE"),
    ],
)
async def test_phonepe_webhook_rejections(overrides, code):
    adapter = PhonePeAdapter(_phonepe())

    result = await adapter.verify_webhook(_params("phonepe", _phonepe_headers(**overrides), PHONEPE_BODY))

    assert result.verified is False
    assert result.error.code == code


@pytest.mark.asyncio
async def test_phonepe_webhook_requires_secret():
    adapter = PhonePeAdapter(_phonepe(webhook_secret=None))

    result = await adapter.verify_webhook(_params("phonepe", _phonepe_headers(), PHONEPE_BODY))
    assert result.error.code == "WEBHOOK_SECRET_MISSING"


def test_phonepe_checksum_appends_salt_index():
    adapter = PhonePeAdapter(_phonepe())
    digest = hashlib.sha256(b"payload/pg/v1/paysalt-key").hexdigest()

    assert adapter.generate_checksum("/pg/v1/pay", "payload") == f"{digest}###1"


def test_phonepe_option_helpers():
    assert clamp_expire_after(None) == 900
    assert clamp_expire_after(10) == 300
    assert clamp_expire_after(99999) == 3600
    assert resolve_instrument_type({}) == "UPI_COLLECT"


@pytest.mark.asyncio
async def test_phonepe_token_fetch_is_single_flight():
    hits = []

    async def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request.url.path)
        await asyncio.sleep(0.01)
        return httpx.Response(200, json={"accessToken": "tok-1", "expiresIn": 3600})

    adapter = PhonePeAdapter(_phonepe(), transport=httpx.MockTransport(handler))
    try:
        tokens = await asyncio.gather(*(adapter.tokens.get_access_token() for _ in range(5)))
    finally:
        await adapter.aclose()

    assert tokens == ["tok-1"] * 5
    assert len(hits) == 1
    assert hits[0].endswith("/v3/authorization/oauth/token")


@pytest.mark.asyncio
async def test_phonepe_manual_capture_not_supported():
    adapter = PhonePeAdapter(_phonepe())

    with pytest.raises(PaymentError) as exc:
        await adapter.capture_payment(CapturePaymentParams(payment_id="pay_1", provider_payment_id="x"))
    assert exc.value.error_code == "CAPTURE_NOT_SUPPORTED"


def test_phonepe_config_validation():
    assert PhonePeAdapter(_phonepe()).validate_config().valid
    invalid = PhonePeAdapter(_phonepe(client_secret=None)).validate_config()
    assert invalid.errors == ["Missing PhonePe OAuth client credentials"]


def _razorpay() -> ResolvedConfig:
    return _config("razorpay", key_id="rzp_test_key", secrets={"key_secret": "ks", "webhook_secret": "rzp_whsec"})


@pytest.mark.asyncio
async def test_razorpay_webhook_signature_and_mapping():
    body = json.dumps(
        {
            "event": "payment.captured",
            "payload": {
                "payment": {
                    "entity": {
                        "id": "pay_rzp_1",
                        "order_id": "order_rzp_1",
                        "status": "captured",
                        "amount": 1000,
                        "vpa": "payer@okaxis",
                        "acquirer_data": {"rrn": "123456789012"},
                    }
                }
            },
        }
    ).encode()
    signature = hmac.new(b"rzp_whsec", body, hashlib.sha256).hexdigest()
    adapter = RazorpayAdapter(_razorpay())

    result = await adapter.verify_webhook(_params("razorpay", {"X-Razorpay-Signature": signature}, body))
    assert result.verified
    assert result.event.type == "payment.captured"
    assert result.event.payment_id == "pay_rzp_1"
    assert result.event.status == PaymentStatus.CAPTURED
    assert result.event.data["orderId"] == "order_rzp_1"
    assert result.event.data["utr"] == "123456789012"

    tampered = await adapter.verify_webhook(_params("razorpay", {"X-Razorpay-Signature": signature}, body + b" "))
    assert tampered.error.code == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_razorpay_create_payment_over_http():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_rzp_7", "status": "created", "amount": 2500, "currency": "INR"})

    adapter = RazorpayAdapter(_razorpay(), transport=httpx.MockTransport(handler))
    try:
        result = await adapter.create_payment(CreatePaymentParams(order_id="o-7", amount_minor=2500))
    finally:
        await adapter.aclose()

    assert seen["path"] == "/v1/orders"
    assert seen["auth"] == "Basic " + base64.b64encode(b"rzp_test_key:ks").decode()
    assert seen["body"]["receipt"] == "o-7"
    assert result.provider_order_id == "order_rzp_7"
    assert result.status == PaymentStatus.CREATED
    assert result.provider_data["checkoutOptions"]["key"] == "rzp_test_key"


@pytest.mark.asyncio
async def test_razorpay_verify_checks_checkout_signature():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/payments/pay_rzp_5"
        return httpx.Response(
            200,
            json={"id": "pay_rzp_5", "order_id": "order_rzp_5", "status": "captured", "amount": 700, "method": "upi"},
        )

    adapter = RazorpayAdapter(_razorpay(), transport=httpx.MockTransport(handler))
    signature = hmac.new(b"ks", b"order_rzp_5|pay_rzp_5", hashlib.sha256).hexdigest()
    data = {"razorpay_order_id": "order_rzp_5", "razorpay_payment_id": "pay_rzp_5"}
    try:
        result = await adapter.verify_payment(
            VerifyPaymentParams(payment_id="pay_local", provider_data={**data, "razorpay_signature": signature})
        )
        with pytest.raises(PaymentError) as exc:
            await adapter.verify_payment(
                VerifyPaymentParams(payment_id="pay_local", provider_data={**data, "razorpay_signature": "0" * 64})
            )
    finally:
        await adapter.aclose()

    assert result.payment_id == "pay_local"
    assert result.status == PaymentStatus.CAPTURED
    assert result.amount_minor == 700
    assert exc.value.error_code == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_razorpay_http_errors_are_typed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "auth"}})

    adapter = RazorpayAdapter(_razorpay(), transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(PaymentError) as exc:
            await adapter.create_payment(CreatePaymentParams(order_id="o-1", amount_minor=100))
    finally:
        await adapter.aclose()

    assert exc.value.error_code == "PROVIDER_AUTH_FAILED"
    assert exc.value.provider == "razorpay"


@pytest.mark.asyncio
async def test_cashfree_webhook_timestamped_signature():
    body = json.dumps(
        {
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {
                "order": {"order_id": "order_cf_1"},
                "payment": {
                    "cf_payment_id": 98765,
                    "payment_status": "SUCCESS",
                    "payment_amount": 10.5,
                    "bank_reference": "UTR0001",
                    "payment_method": {"upi": {"upi_id": "payer@ybl"}},
                },
            },
        }
    ).encode()
    adapter = CashfreeAdapter(_config("cashfree", app_id="cf_app", secrets={"secret_key": "cf_sk", "webhook_secret": "cf_wh"}))
    signature = adapter.sign_webhook("1700000000", body)
    expected = base64.b64encode(hmac.new(b"cf_wh", b"1700000000" + body, hashlib.sha256).digest()).decode()
    assert signature == expected

    result = await adapter.verify_webhook(
        _params("cashfree", {"x-webhook-signature": signature, "x-webhook-timestamp": "1700000000"}, body)
    )
    assert result.verified
    assert result.event.payment_id == "order_cf_1"
    assert result.event.status == PaymentStatus.CAPTURED
    assert result.event.data["amount"] == 1050
    assert result.event.data["transactionId"] == "98765"

    missing = await adapter.verify_webhook(_params("cashfree", {"x-webhook-signature": signature}, body))
    assert missing.error.code == "MISSING_TIMESTAMP"


@pytest.mark.asyncio
async def test_stripe_webhook_uses_sdk_verification(monkeypatch):
    def construct_event(payload, sig_header, secret, tolerance=None):
        if sig_header != "t=1,v1=good":
            raise stripe.SignatureVerificationError("bad signature", sig_header)
        assert secret == "whsec_test"
        return {
            "id": "evt_st_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"object": "payment_intent", "id": "pi_1", "status": "succeeded", "amount": 1000}},
        }

    monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)
    adapter = StripeClient(_config("stripe", secrets={"secret_key": "sk_test", "webhook_secret": "whsec_test"}))

    result = await adapter.verify_webhook(_params("stripe", {"Stripe-Signature": "t=1,v1=good"}, b"{}"))
    assert result.verified
    assert result.event.payment_id == "pi_1"
    assert result.event.status == PaymentStatus.CAPTURED
    assert result.event.data["eventId"] == "evt_st_1"

    rejected = await adapter.verify_webhook(_params("stripe", {"Stripe-Signature": "t=1,v1=bad"}, b"{}"))
    assert rejected.error.code == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_unsupported_providers_never_validate():
    registry = build_adapter_registry()
    adapter = registry[PaymentProvider.PAYU](_config("payu", secrets={"salt": "s"}))

    assert isinstance(adapter, UnsupportedAdapter)
    assert adapter.validate_config().valid is False
    result = await adapter.verify_webhook(_params("payu", {}, b"{}"))
    assert result.error.code == "UNSUPPORTED_PROVIDER"
    with pytest.raises(PaymentError):
        await adapter.create_payment(CreatePaymentParams(order_id="o", amount_minor=1))
