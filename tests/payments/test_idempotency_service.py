from datetime import datetime, timedelta, timezone

import pytest

from application.dtos.payments import RefundResult
from application.services.idempotency_service import IdempotencyService
from domain.payment.exceptions import PaymentError, RefundError
from domain.payment.status import RefundStatus


class Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _refund(amount: int = 500) -> RefundResult:
    return RefundResult(
        refund_id="rf_1",
        payment_id="pay_1",
        amount_minor=amount,
        status=RefundStatus.PENDING,
        provider="razorpay",
        environment="test",
    )


@pytest.mark.asyncio
async def test_success_is_returned_without_reexecuting(idempotency):
    calls = []

    async def op():
        calls.append(1)
        return {"value": len(calls)}

    first = await idempotency.execute_with_idempotency("k", "create_refund", op)
    second = await idempotency.execute_with_idempotency("k", "create_refund", op)

    assert first == second == {"value": 1}
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_scope_and_tenant_partition_keys(idempotency):
    calls = []

    async def op():
        calls.append(1)
        return len(calls)

    await idempotency.execute_with_idempotency("k", "create_refund", op)
    await idempotency.execute_with_idempotency("k", "create_payment", op)
    await idempotency.execute_with_idempotency("k", "create_refund", op, tenant_id="other")

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_defined_failure_is_stored_and_replayed(idempotency, store):
    calls = []

    async def op():
        calls.append(1)
        raise RefundError("too much", "REFUND_EXCEEDS_CAPTURED_AMOUNT", "razorpay")

    for _ in range(2):
        with pytest.raises(RefundError) as exc:
            await idempotency.execute_with_idempotency("r1", "create_refund", op)
        assert exc.value.error_code == "REFUND_EXCEEDS_CAPTURED_AMOUNT"

    assert len(calls) == 1
    stored = store.idempotency[("default", "r1", "create_refund")]
    assert stored.response["kind"] == "error"
    assert stored.response["error_class"] == "RefundError"


@pytest.mark.asyncio
async def test_undefined_failure_is_not_stored(idempotency, store):
    calls = []

    async def op():
        calls.append(1)
        if len(calls) == 1:
            raise PaymentError("timeout", "PROVIDER_TIMEOUT", "razorpay")
        return "ok"

    with pytest.raises(PaymentError):
        await idempotency.execute_with_idempotency("p1", "create_payment", op)
    assert not store.idempotency

    assert await idempotency.execute_with_idempotency("p1", "create_payment", op) == "ok"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_stored_result_rehydrates_after_restart(uow_factory):
    async def op():
        return _refund()

    await IdempotencyService(uow_factory).execute_with_idempotency("r", "create_refund", op)

    async def must_not_run():
        raise AssertionError("operation re-executed")

    restored = await IdempotencyService(uow_factory).execute_with_idempotency(
        "r", "create_refund", must_not_run, result_type=RefundResult
    )
    assert isinstance(restored, RefundResult)
    assert restored.amount_minor == 500


@pytest.mark.asyncio
async def test_expired_record_allows_reexecution(uow_factory):
    clock = Clock()
    service = IdempotencyService(uow_factory, ttl_hours=1, clock=clock)
    calls = []

    async def op():
        calls.append(1)
        return len(calls)

    assert await service.execute_with_idempotency("k", "capture_payment", op) == 1
    clock.now += timedelta(hours=2)
    await service.cleanup_expired()

    assert await service.execute_with_idempotency("k", "capture_payment", op) == 2


@pytest.mark.asyncio
async def test_expired_outcomes_are_swept_from_memory(uow_factory):
    clock = Clock()
    service = IdempotencyService(uow_factory, ttl_hours=24, clock=clock)

    async def op():
        return "ok"

    for _ in range(50):
        await service.execute_with_idempotency(service.generate_key("payment"), "create_payment", op)
    assert len(service._memory) == 50

    clock.now += timedelta(days=3)
    await service.execute_with_idempotency(service.generate_key("payment"), "create_payment", op)

    assert len(service._memory) == 1


@pytest.mark.asyncio
async def test_memory_is_bounded_and_evicted_keys_replay_from_storage(uow_factory):
    service = IdempotencyService(uow_factory, max_memory_entries=3)
    calls = []

    async def op():
        calls.append(1)
        return len(calls)

    for index in range(5):
        await service.execute_with_idempotency(f"k{index}", "create_refund", op)

    assert len(service._memory) == 3
    assert await service.execute_with_idempotency("k0", "create_refund", op) == 1
    assert len(calls) == 5


@pytest.mark.asyncio
async def test_cleanup_respects_grace_days(uow_factory, store):
    clock = Clock()
    service = IdempotencyService(uow_factory, ttl_hours=1, clock=clock)
    await service.store_response("old", "create_payment", {"kind": "result", "data": 1})
    clock.now += timedelta(days=2)

    assert await service.cleanup_expired(days=3) == 0
    assert await service.cleanup_expired(days=1) == 1
    assert not store.idempotency


@pytest.mark.asyncio
async def test_duplicate_store_reports_false(idempotency):
    assert await idempotency.store_response("dup", "create_payment", {"kind": "result", "data": 1})
    assert not await idempotency.store_response("dup", "create_payment", {"kind": "result", "data": 2})


@pytest.mark.asyncio
async def test_invalidate_key_forces_reexecution(idempotency):
    calls = []

    async def op():
        calls.append(1)
        return len(calls)

    await idempotency.execute_with_idempotency("k", "create_payment", op)
    assert await idempotency.invalidate_key("k", "create_payment")
    assert await idempotency.check_key("k", "create_payment") is None
    assert await idempotency.execute_with_idempotency("k", "create_payment", op) == 2


@pytest.mark.asyncio
async def test_stats_count_keys_by_scope(idempotency):
    async def op():
        return 1

    await idempotency.execute_with_idempotency("a", "create_payment", op)
    await idempotency.execute_with_idempotency("b", "create_payment", op)
    await idempotency.execute_with_idempotency("c", "create_refund", op)

    stats = await idempotency.get_stats()
    assert stats["total_keys"] == 3
    assert stats["keys_by_scope"] == {"create_payment": 2, "create_refund": 1}


def test_generated_keys_carry_scope_prefix():
    first = IdempotencyService.generate_key("refund")
    assert first.startswith("refund_")
    assert first != IdempotencyService.generate_key("refund")
