import asyncio

import pytest

from application.dtos.payments import (
    CancelPaymentParams,
    CapturePaymentParams,
    CreatePaymentParams,
    CreateRefundParams,
    VerifyPaymentParams,
)
from application.services.payment_service import PaymentsService
from domain.payment import events
from domain.payment.entity import Refund
from domain.payment.exceptions import PaymentError, RefundError
from domain.payment.status import PaymentStatus, RefundStatus


def _params(order_id: str = "order_1", **kwargs) -> CreatePaymentParams:
    return CreatePaymentParams(order_id=order_id, amount_minor=1000, currency="inr", **kwargs)


@pytest.mark.asyncio
async def test_create_payment_persists_row_and_event(payments_service, stub_adapter, store):
    result = await payments_service.create_payment(_params(preferred_method="upi"), idempotency_key="k1")

    assert result.provider == "razorpay"
    assert stub_adapter.count("create_payment") == 1
    saved = store.payments[result.payment_id]
    assert saved.method_kind == "upi"
    assert saved.currency == "INR"
    assert saved.idempotency_key == "k1"
    assert events.PAYMENT_CREATED in store.event_types()
    sent = stub_adapter.calls[0][1]
    assert sent.success_url.endswith("/payment-success")
    assert sent.metadata["environment"] == "test"


@pytest.mark.asyncio
async def test_same_idempotency_key_calls_adapter_once(payments_service, stub_adapter):
    first = await payments_service.create_payment(_params(), idempotency_key="same")
    second = await payments_service.create_payment(_params(), idempotency_key="same")

    assert stub_adapter.count("create_payment") == 1
    assert first.payment_id == second.payment_id


@pytest.mark.asyncio
async def test_concurrent_requests_with_same_key_execute_once(payments_service, stub_adapter):
    results = await asyncio.gather(
        *(payments_service.create_payment(_params(), idempotency_key="race") for _ in range(5))
    )

    assert stub_adapter.count("create_payment") == 1
    assert {r.payment_id for r in results} == {results[0].payment_id}


@pytest.mark.asyncio
async def test_missing_key_is_generated(payments_service, stub_adapter, store):
    result = await payments_service.create_payment(_params())

    key = store.payments[result.payment_id].idempotency_key
    assert key.startswith("payment_")


@pytest.mark.asyncio
async def test_upi_guard_blocks_second_capture_for_order(payments_service, stub_adapter, add_payment, store):
    add_payment("pay_done", status="COMPLETED", method_kind="upi", amount_captured_minor=1000)

    with pytest.raises(PaymentError) as exc:
        await payments_service.create_payment(_params(preferred_method="upi"), idempotency_key="upi-1")
    assert exc.value.error_code == "UPI_PAYMENT_ALREADY_CAPTURED"
    assert stub_adapter.count("create_payment") == 0

    # the defined failure is replayed for the same key
    with pytest.raises(PaymentError) as replay:
        await payments_service.create_payment(_params(preferred_method="upi"), idempotency_key="upi-1")
    assert replay.value.error_code == "UPI_PAYMENT_ALREADY_CAPTURED"
    assert ("default", "upi-1", "create_payment") in store.idempotency


@pytest.mark.asyncio
async def test_upi_guard_ignores_card_payments(payments_service, stub_adapter, add_payment):
    add_payment("pay_card", status="COMPLETED", method_kind="card", amount_captured_minor=1000)

    await payments_service.create_payment(_params(preferred_method="upi"))
    assert stub_adapter.count("create_payment") == 1


@pytest.mark.asyncio
async def test_provider_failure_is_wrapped_and_not_cached(payments_service, stub_adapter, store):
    stub_adapter.create_error = PaymentError("boom", "PROVIDER_REQUEST_FAILED", "razorpay")

    with pytest.raises(PaymentError) as exc:
        await payments_service.create_payment(_params(), idempotency_key="retry-me")
    assert exc.value.error_code == "PAYMENT_CREATION_FAILED"
    assert not store.idempotency

    stub_adapter.create_error = None
    await payments_service.create_payment(_params(), idempotency_key="retry-me")
    assert stub_adapter.count("create_payment") == 2


@pytest.mark.asyncio
async def test_transient_errors_are_retried(payments_service, stub_adapter):
    attempts = []
    original = stub_adapter.create_payment

    async def flaky(params):
        attempts.append(1)
        if len(attempts) < 2:
            raise PaymentError("timeout", "PROVIDER_TIMEOUT", "razorpay")
        return await original(params)

    stub_adapter.create_payment = flaky
    result = await payments_service.create_payment(_params())

    assert len(attempts) == 2
    assert result.status == PaymentStatus.CREATED


@pytest.mark.asyncio
async def test_verify_applies_completed_status_and_marks_order_paid(payments_service, stub_adapter, add_payment, store):
    add_payment("pay_1", status="PENDING", provider_payment_id="rzp_1")
    stub_adapter.payment_status = PaymentStatus.CAPTURED

    await payments_service.verify_payment(VerifyPaymentParams(payment_id="pay_1"))

    assert store.payments["pay_1"].status == "COMPLETED"
    assert store.payments["pay_1"].amount_captured_minor == 1000
    assert store.orders["order_1"].payment_status == "paid"
    assert events.PAYMENT_VERIFIED in store.event_types()


@pytest.mark.asyncio
async def test_verify_never_leaves_terminal_state(payments_service, stub_adapter, add_payment, store):
    add_payment("pay_1", status="COMPLETED", provider_payment_id="rzp_1")
    stub_adapter.payment_status = PaymentStatus.FAILED

    await payments_service.verify_payment(VerifyPaymentParams(payment_id="pay_1"))

    assert store.payments["pay_1"].status == "COMPLETED"
    assert events.PAYMENT_VERIFIED not in store.event_types()


@pytest.mark.asyncio
async def test_get_payment_not_found(payments_service):
    with pytest.raises(PaymentError) as exc:
        await payments_service.get_payment("missing")
    assert exc.value.error_code == "PAYMENT_NOT_FOUND"


@pytest.mark.asyncio
async def test_capture_not_supported_propagates(payments_service, add_payment):
    add_payment("pay_1", provider_payment_id="rzp_1")

    with pytest.raises(PaymentError) as exc:
        await payments_service.capture_payment(CapturePaymentParams(payment_id="pay_1"))
    assert exc.value.error_code == "CAPTURE_NOT_SUPPORTED"


@pytest.mark.asyncio
async def test_cancel_pending_payment(payments_service, add_payment, store):
    add_payment("pay_1", status="PENDING")

    result = await payments_service.cancel_payment(CancelPaymentParams(payment_id="pay_1", order_id="order_1"))

    assert result.status == PaymentStatus.CANCELLED
    assert store.payments["pay_1"].status == "CANCELLED"
    assert store.orders["order_1"].payment_status == "failed"
    assert store.orders["order_1"].payment_failed_at is not None
    assert events.CHECKOUT_USER_CANCELLED in store.event_types()


@pytest.mark.asyncio
async def test_cancel_is_idempotent_for_cancelled_payment(payments_service, add_payment, store):
    add_payment("pay_1", status="CANCELLED")

    result = await payments_service.cancel_payment(CancelPaymentParams(payment_id="pay_1"))

    assert result.status == PaymentStatus.CANCELLED
    assert events.CHECKOUT_USER_CANCELLED not in store.event_types()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, code",
    [("COMPLETED", "PAYMENT_ALREADY_COMPLETED"), ("FAILED", "PAYMENT_ALREADY_FAILED")],
)
async def test_cancel_rejects_terminal_payments(payments_service, add_payment, status, code):
    add_payment("pay_1", status=status)

    with pytest.raises(PaymentError) as exc:
        await payments_service.cancel_payment(CancelPaymentParams(payment_id="pay_1"))
    assert exc.value.error_code == code


@pytest.mark.asyncio
async def test_cancel_checks_order(payments_service, add_payment):
    add_payment("pay_1")

    with pytest.raises(PaymentError) as exc:
        await payments_service.cancel_payment(CancelPaymentParams(payment_id="pay_1", order_id="other"))
    assert exc.value.error_code == "ORDER_MISMATCH"


def _captured(add_payment):
    return add_payment("pay_1", status="COMPLETED", provider_payment_id="rzp_1", amount_captured_minor=1000)


@pytest.mark.asyncio
async def test_refund_exceeding_captured_amount_is_rejected(payments_service, stub_adapter, add_payment, store):
    _captured(add_payment)
    store.refunds["rf_old"] = Refund(
        id="rf_old",
        tenant_id="default",
        payment_id="pay_1",
        provider="razorpay",
        amount_minor=800,
        status=RefundStatus.COMPLETED.value,
    )

    with pytest.raises(RefundError) as exc:
        await payments_service.create_refund(CreateRefundParams(payment_id="pay_1", amount_minor=300))

    assert exc.value.error_code == "REFUND_EXCEEDS_CAPTURED_AMOUNT"
    assert exc.value.details["projected"] == 1100
    assert stub_adapter.count("create_refund") == 0
    assert events.REFUND_ATTEMPT_FAILED in store.event_types()


@pytest.mark.asyncio
async def test_failed_refunds_do_not_count_against_capture(payments_service, stub_adapter, add_payment, store):
    _captured(add_payment)
    store.refunds["rf_failed"] = Refund(
        id="rf_failed",
        tenant_id="default",
        payment_id="pay_1",
        provider="razorpay",
        amount_minor=1000,
        status=RefundStatus.FAILED.value,
    )

    result = await payments_service.create_refund(CreateRefundParams(payment_id="pay_1", amount_minor=1000))
    assert result.amount_minor == 1000
    assert stub_adapter.count("create_refund") == 1


@pytest.mark.asyncio
async def test_completed_refund_updates_refunded_total(payments_service, stub_adapter, add_payment, store):
    _captured(add_payment)
    stub_adapter.refund_status = RefundStatus.COMPLETED

    await payments_service.create_refund(CreateRefundParams(payment_id="pay_1", amount_minor=400))

    assert store.payments["pay_1"].amount_refunded_minor == 400
    assert events.REFUND_CREATED in store.event_types()


@pytest.mark.asyncio
async def test_full_refund_when_amount_omitted(payments_service, stub_adapter, add_payment):
    _captured(add_payment)

    result = await payments_service.create_refund(CreateRefundParams(payment_id="pay_1"))
    assert result.amount_minor == 1000


@pytest.mark.asyncio
async def test_refund_requires_captured_amount(payments_service, add_payment):
    add_payment("pay_1", status="PENDING", provider_payment_id="rzp_1")

    with pytest.raises(RefundError) as exc:
        await payments_service.create_refund(CreateRefundParams(payment_id="pay_1", amount_minor=100))
    assert exc.value.error_code == "NO_CAPTURED_AMOUNT"


@pytest.mark.asyncio
async def test_refund_status_poll_persists_change(payments_service, stub_adapter, add_payment, store):
    _captured(add_payment)
    await payments_service.create_refund(CreateRefundParams(payment_id="pay_1", amount_minor=500))
    refund_id = next(iter(store.refunds))
    stub_adapter.refund_status = RefundStatus.COMPLETED

    result = await payments_service.get_refund_status(refund_id)

    assert result.status == RefundStatus.COMPLETED
    assert store.refunds[refund_id].status == "completed"
    assert store.payments["pay_1"].amount_refunded_minor == 500
    assert events.REFUND_STATUS_CHANGED in store.event_types()


@pytest.mark.asyncio
async def test_health_check_reports_enabled_providers(payments_service):
    status = await payments_service.perform_health_check()
    assert set(status) == {"razorpay"}
    assert status["razorpay"].healthy


class RecordingScheduler:
    def __init__(self):
        self.jobs = []

    async def register_job(self, **job):
        self.jobs.append(job)

    async def get_latest_job_for_order(self, tenant_id, order_id):
        return next((j for j in reversed(self.jobs) if j["order_id"] == order_id), None)


@pytest.mark.asyncio
async def test_pending_upi_payment_is_registered_for_reconciliation(uow_factory, adapter_factory, idempotency):
    scheduler = RecordingScheduler()
    service = PaymentsService(
        uow_factory, adapter_factory, idempotency, environment="test", reconciliation=scheduler
    )

    upi = await service.create_payment(_params("order_upi", preferred_method="upi"))
    await service.create_payment(_params("order_card", preferred_method="card"))

    assert [job["payment_id"] for job in scheduler.jobs] == [upi.payment_id]
    assert scheduler.jobs[0]["provider"] == "razorpay"
