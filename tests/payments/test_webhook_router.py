import json

import pytest

from application.dtos.payments import ErrorInfo, WebhookEvent, WebhookVerifyResult
from application.services.webhook_router import create_dedupe_key, extract_identifiers
from domain.payment import events
from domain.payment.entity import Refund
from domain.payment.status import PaymentStatus, RefundStatus


def _body(**fields) -> bytes:
    payload = {"event": "payment.captured", "id": "evt_1", **fields}
    return json.dumps(payload).encode()


def _verified(status, *, payment_id="pay_1", refund_id=None, **data) -> WebhookVerifyResult:
    return WebhookVerifyResult(
        verified=True,
        event=WebhookEvent(type="payment.update", payment_id=payment_id, refund_id=refund_id, status=status, data=data),
    )


def _rejected(code: str) -> WebhookVerifyResult:
    return WebhookVerifyResult(verified=False, error=ErrorInfo(code=code, message="rejected"))


@pytest.mark.asyncio
async def test_captured_webhook_completes_payment_and_order(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1", status="PENDING")
    stub_adapter.webhook_result = _verified(PaymentStatus.CAPTURED, amount=1000)

    response = await webhook_router.process_webhook("razorpay", {"X-Razorpay-Signature": "sig"}, _body())

    assert response.status_code == 200
    assert response.body["status"] == "processed"
    assert response.body["payment_updated"] is True
    assert store.payments["pay_1"].status == "COMPLETED"
    assert store.payments["pay_1"].amount_captured_minor == 1000
    assert store.orders["order_1"].payment_status == "paid"
    assert events.WEBHOOK_STATUS_APPLIED in store.event_types()
    record = next(iter(store.webhooks.values()))
    assert record.processed and record.signature_verified and record.error is None


@pytest.mark.asyncio
async def test_replayed_delivery_skips_verification(webhook_router, stub_adapter, add_payment):
    add_payment("pay_1")
    stub_adapter.webhook_result = _verified(PaymentStatus.CAPTURED)
    body = _body()

    await webhook_router.process_webhook("razorpay", {}, body)
    replay = await webhook_router.process_webhook("razorpay", {}, body)

    assert replay.status_code == 200
    assert replay.body == {"status": "already_processed"}
    assert stub_adapter.count("verify_webhook") == 1


@pytest.mark.asyncio
async def test_terminal_payment_is_not_overwritten(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1", status="COMPLETED", amount_captured_minor=1000)
    stub_adapter.webhook_result = _verified(PaymentStatus.FAILED)

    response = await webhook_router.process_webhook("razorpay", {}, _body(event="payment.failed"))

    assert response.status_code == 200
    assert response.body["payment_updated"] is False
    assert store.payments["pay_1"].status == "COMPLETED"
    assert events.WEBHOOK_STATUS_APPLIED not in store.event_types()


@pytest.mark.asyncio
async def test_failed_webhook_stamps_order(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1", status="PENDING")
    stub_adapter.webhook_result = _verified(
        PaymentStatus.FAILED, error_code="BAD_REQUEST_ERROR", error_description="Payment declined"
    )

    await webhook_router.process_webhook("razorpay", {}, _body(event="payment.failed"))

    payment = store.payments["pay_1"]
    assert payment.status == "FAILED"
    assert store.orders["order_1"].payment_status == "failed"
    assert "webhook.payment_failed" in store.event_types()


@pytest.mark.asyncio
async def test_amount_mismatch_does_not_promote_order(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1", status="PENDING", amount_minor=1000)
    stub_adapter.webhook_result = _verified(PaymentStatus.CAPTURED, amount=900)

    await webhook_router.process_webhook("razorpay", {}, _body())

    assert store.payments["pay_1"].status == "COMPLETED"
    assert store.payments["pay_1"].amount_captured_minor == 1000
    assert store.orders["order_1"].payment_status == "pending"
    assert "webhook.amount_mismatch" in store.event_types()


@pytest.mark.asyncio
async def test_payment_found_by_provider_reference(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1", status="PENDING", provider_order_id="order_rzp_9")
    stub_adapter.webhook_result = _verified(PaymentStatus.PROCESSING, payment_id="unknown", orderId="order_rzp_9")

    response = await webhook_router.process_webhook("razorpay", {}, _body())

    assert response.body["payment_updated"] is False
    assert store.payments["pay_1"].status == "PENDING"

    stub_adapter.webhook_result = _verified(PaymentStatus.CAPTURED, payment_id="unknown", orderId="order_rzp_9")
    response = await webhook_router.process_webhook("razorpay", {}, _body(id="evt_2"))
    assert response.body["payment_updated"] is True


@pytest.mark.asyncio
async def test_invalid_signature_returns_401(webhook_router, stub_adapter, store):
    stub_adapter.webhook_result = _rejected("INVALID_SIGNATURE")

    response = await webhook_router.process_webhook("razorpay", {}, _body())

    assert response.status_code == 401
    assert response.body["status"] == "signature_invalid"
    record = next(iter(store.webhooks.values()))
    assert record.signature_verified is False
    assert record.error == "signature_invalid"
    assert "webhook.signature_failed" in store.event_types()


@pytest.mark.asyncio
async def test_invalid_authorization_returns_403(webhook_router, stub_adapter, store):
    stub_adapter.webhook_result = _rejected("INVALID_AUTHORIZATION")

    response = await webhook_router.process_webhook("razorpay", {}, _body())

    assert response.status_code == 403
    assert response.body["status"] == "authorization_invalid"
    assert "security.webhook.auth_failed" in store.event_types()


@pytest.mark.asyncio
@pytest.mark.parametrize("provider", ["not-a-gateway", "stripe"])
async def test_unknown_or_disabled_provider_returns_404(webhook_router, stub_adapter, provider):
    response = await webhook_router.process_webhook(provider, {}, _body())

    assert response.status_code == 404
    assert response.body == {"status": "provider_not_available"}
    assert stub_adapter.count("verify_webhook") == 0


@pytest.mark.asyncio
async def test_processing_error_returns_500_and_allows_redelivery(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1")
    stub_adapter.webhook_result = _verified(PaymentStatus.CAPTURED)
    original = webhook_router.update_payment_status

    async def broken(*args, **kwargs):
        raise RuntimeError("db down")

    webhook_router.update_payment_status = broken
    body = _body()
    response = await webhook_router.process_webhook("razorpay", {}, body)
    assert response.status_code == 500
    record = next(iter(store.webhooks.values()))
    assert record.processed is False and record.error == "db down"

    webhook_router.update_payment_status = original
    retry = await webhook_router.process_webhook("razorpay", {}, body)
    assert retry.body["status"] == "processed"
    assert store.payments["pay_1"].status == "COMPLETED"
    assert len(store.webhooks) == 1


@pytest.mark.asyncio
async def test_refund_webhook_updates_refund_only(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1", status="COMPLETED", amount_captured_minor=1000)
    store.refunds["rf_1"] = Refund(
        id="rf_1",
        tenant_id="default",
        payment_id="pay_1",
        provider="razorpay",
        amount_minor=300,
        provider_refund_id="rfnd_rzp_1",
    )
    stub_adapter.webhook_result = _verified(RefundStatus.COMPLETED, refund_id="rfnd_rzp_1")

    response = await webhook_router.process_webhook("razorpay", {}, _body(event="refund.processed"))

    assert response.body["refund_updated"] is True
    assert response.body["payment_updated"] is False
    assert store.refunds["rf_1"].status == "completed"
    assert store.payments["pay_1"].amount_refunded_minor == 300
    assert store.payments["pay_1"].status == "COMPLETED"


@pytest.mark.asyncio
async def test_webhook_stats_and_cleanup(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1")
    stub_adapter.webhook_result = _verified(PaymentStatus.CAPTURED)
    await webhook_router.process_webhook("razorpay", {}, _body())

    stats = await webhook_router.get_webhook_stats()
    assert stats["total"] == 1 and stats["processed"] == 1

    assert await webhook_router.cleanup_old_webhooks(older_than_days=1) == 0
    assert await webhook_router.cleanup_old_webhooks(older_than_days=-1) == 1


def test_extract_identifiers_reads_nested_payloads():
    body = json.dumps({"event": {"id": "evt_9", "payload": {"orderId": "o1", "transactionId": "t1", "utr": "U1"}}})

    assert extract_identifiers(body.encode()) == {
        "event_id": "evt_9",
        "order_id": "o1",
        "transaction_id": "t1",
        "utr": "U1",
    }
    assert extract_identifiers(b"not json") == {}


def test_dedupe_key_is_stable_and_body_sensitive():
    ids = {"order_id": "o1", "transaction_id": "t1"}

    first = create_dedupe_key("phonepe", "default", b"{}", ids)
    assert first == create_dedupe_key("phonepe", "default", b"{}", ids)
    assert first != create_dedupe_key("phonepe", "other", b"{}", ids)
    assert first != create_dedupe_key("phonepe", "default", b'{"a":1}', ids)
    assert len(first) == 64


def _processing_refund(store, provider_refund_id="rfnd_rzp_2") -> None:
    store.refunds["rf_2"] = Refund(
        id="rf_2",
        tenant_id="default",
        payment_id="pay_1",
        provider="razorpay",
        amount_minor=400,
        status=RefundStatus.PROCESSING.value,
        provider_refund_id=provider_refund_id,
    )


@pytest.mark.asyncio
async def test_refund_event_in_payment_vocabulary_completes_refund(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1", status="COMPLETED", amount_captured_minor=1000)
    _processing_refund(store)
    stub_adapter.webhook_result = _verified(PaymentStatus.CAPTURED, refund_id="rfnd_rzp_2")

    response = await webhook_router.process_webhook("razorpay", {}, _body(event="refund.processed", id="evt_rf_2"))

    assert response.body["refund_updated"] is True
    assert store.refunds["rf_2"].status == "completed"
    assert store.payments["pay_1"].amount_refunded_minor == 400


@pytest.mark.asyncio
async def test_refund_status_never_moves_backwards(webhook_router, stub_adapter, add_payment, store):
    add_payment("pay_1", status="COMPLETED", amount_captured_minor=1000)
    _processing_refund(store)
    stub_adapter.webhook_result = _verified(RefundStatus.PENDING, refund_id="rfnd_rzp_2")

    response = await webhook_router.process_webhook("razorpay", {}, _body(event="refund.created", id="evt_rf_3"))

    assert response.body["refund_updated"] is False
    assert store.refunds["rf_2"].status == "processing"
