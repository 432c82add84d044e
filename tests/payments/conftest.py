"""In-memory unit of work, repositories and a scripted adapter for payment tests."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import pytest

from application.dtos.payments import (
    ConfigValidation,
    ErrorInfo,
    HealthCheckResult,
    PaymentMethodInfo,
    PaymentResult,
    RefundResult,
    WebhookVerifyResult,
)
from application.services.adapter_factory import AdapterFactory
from application.services.config_resolver import ConfigResolver
from application.services.idempotency_service import IdempotencyService
from application.services.payment_service import PaymentsService
from application.services.webhook_router import WebhookRouter
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.capabilities import PaymentProvider
from domain.payment.entity import (
    IdempotencyRecord,
    Order,
    Payment,
    ProviderConfigRecord,
    Refund,
    WebhookRecord,
)
from domain.payment.events import PaymentEvent
from domain.payment.exceptions import PaymentError
from domain.payment.repository import (
    IdempotencyRepository,
    OrderRepository,
    PaymentEventRepository,
    PaymentRepository,
    ProviderConfigRepository,
    RefundRepository,
    WebhookEventRepository,
)
from domain.payment.status import PaymentStatus, RefundStatus
from infrastructure.external.payments.secrets import EnvSecretsResolver


RAZORPAY_ENV = {
    "PAYAPP_TEST_RAZORPAY_KEY_SECRET": "rzp_secret",
    "PAYAPP_TEST_RAZORPAY_WEBHOOK_SECRET": "rzp_whsec",
}


@dataclass
class Store:
    payments: dict[str, Payment] = field(default_factory=dict)
    refunds: dict[str, Refund] = field(default_factory=dict)
    orders: dict[str, Order] = field(default_factory=dict)
    events: list[PaymentEvent] = field(default_factory=list)
    webhooks: dict[str, WebhookRecord] = field(default_factory=dict)
    idempotency: dict[tuple[str, str, str], IdempotencyRecord] = field(default_factory=dict)
    provider_configs: dict[tuple[str, str, str], ProviderConfigRecord] = field(default_factory=dict)
    commits: int = 0

    def event_types(self) -> list[str]:
        return [e.type for e in self.events]


class FakePaymentRepository(PaymentRepository):
    def __init__(self, store: Store):
        self.store = store

    async def create(self, payment: Payment) -> Payment:
        self.store.payments[payment.id] = copy.deepcopy(payment)
        return payment

    async def get_by_id(self, tenant_id: str, payment_id: str) -> Optional[Payment]:
        payment = self.store.payments.get(payment_id)
        if payment is None or payment.tenant_id != tenant_id:
            return None
        return copy.deepcopy(payment)

    async def get_for_update(self, tenant_id: str, payment_id: str) -> Optional[Payment]:
        return await self.get_by_id(tenant_id, payment_id)

    async def find_by_reference(self, tenant_id, provider, reference, *, for_update=False):
        for payment in self.store.payments.values():
            if payment.tenant_id != tenant_id or payment.provider != provider:
                continue
            refs = (
                payment.id,
                payment.provider_payment_id,
                payment.provider_order_id,
                payment.provider_transaction_id,
            )
            if reference in refs:
                return copy.deepcopy(payment)
        return None

    async def find_captured_for_order(self, tenant_id, order_id, statuses, *, method_kind=None):
        for payment in self.store.payments.values():
            if payment.tenant_id != tenant_id or payment.order_id != order_id:
                continue
            if payment.status not in statuses and payment.amount_captured_minor <= 0:
                continue
            if method_kind and (payment.method_kind or "").lower() != method_kind.lower():
                continue
            return copy.deepcopy(payment)
        return None

    async def update(self, payment: Payment) -> Payment:
        if payment.id not in self.store.payments:
            raise ValueError(f"Payment with id {payment.id} not found")
        self.store.payments[payment.id] = copy.deepcopy(payment)
        return payment


class FakeRefundRepository(RefundRepository):
    def __init__(self, store: Store):
        self.store = store

    async def create(self, refund: Refund) -> Refund:
        self.store.refunds[refund.id] = copy.deepcopy(refund)
        return refund

    async def get_by_id(self, tenant_id: str, refund_id: str) -> Optional[Refund]:
        refund = self.store.refunds.get(refund_id)
        if refund is None or refund.tenant_id != tenant_id:
            return None
        return copy.deepcopy(refund)

    async def get_by_merchant_refund_id(self, tenant_id, payment_id, merchant_refund_id):
        for refund in self.store.refunds.values():
            if (refund.tenant_id, refund.payment_id, refund.merchant_refund_id) == (
                tenant_id,
                payment_id,
                merchant_refund_id,
            ):
                return copy.deepcopy(refund)
        return None

    async def find_by_reference(self, tenant_id, provider, reference, *, for_update=False):
        for refund in self.store.refunds.values():
            if refund.tenant_id != tenant_id or refund.provider != provider:
                continue
            if reference in (refund.id, refund.provider_refund_id, refund.merchant_refund_id):
                return copy.deepcopy(refund)
        return None

    async def sum_amount(self, payment_id, statuses=None, exclude_statuses=None) -> int:
        total = 0
        for refund in self.store.refunds.values():
            if refund.payment_id != payment_id:
                continue
            if statuses and refund.status not in statuses:
                continue
            if exclude_statuses and refund.status in exclude_statuses:
                continue
            total += refund.amount_minor
        return total

    async def update(self, refund: Refund) -> Refund:
        self.store.refunds[refund.id] = copy.deepcopy(refund)
        return refund


class FakeOrderRepository(OrderRepository):
    def __init__(self, store: Store):
        self.store = store

    async def get_by_id(self, tenant_id: str, order_id: str) -> Optional[Order]:
        order = self.store.orders.get(order_id)
        return copy.deepcopy(order) if order and order.tenant_id == tenant_id else None

    async def mark_paid(self, tenant_id: str, order_id: str) -> bool:
        order = self.store.orders.get(order_id)
        if order is None or order.tenant_id != tenant_id or order.payment_status == "paid":
            return False
        order.payment_status = "paid"
        if order.status == "pending":
            order.status = "confirmed"
        return True

    async def mark_payment_failed(self, tenant_id: str, order_id: str, failed_at: datetime) -> bool:
        order = self.store.orders.get(order_id)
        if order is None or order.tenant_id != tenant_id or order.payment_status == "paid":
            return False
        order.payment_status = "failed"
        order.payment_failed_at = failed_at
        return True


class FakeEventRepository(PaymentEventRepository):
    def __init__(self, store: Store):
        self.store = store

    async def add(self, event: PaymentEvent) -> PaymentEvent:
        self.store.events.append(event)
        return event

    async def list_for_payment(self, tenant_id: str, payment_id: str) -> list[PaymentEvent]:
        return [e for e in self.store.events if e.tenant_id == tenant_id and e.payment_id == payment_id]


class FakeWebhookRepository(WebhookEventRepository):
    def __init__(self, store: Store):
        self.store = store

    async def get_by_dedupe_key(self, provider: str, dedupe_key: str) -> Optional[WebhookRecord]:
        for record in self.store.webhooks.values():
            if record.provider == provider and record.dedupe_key == dedupe_key:
                return copy.deepcopy(record)
        return None

    async def create(self, record: WebhookRecord) -> WebhookRecord:
        if await self.get_by_dedupe_key(record.provider, record.dedupe_key) is not None:
            raise ValueError("duplicate dedupe key")
        self.store.webhooks[record.id] = copy.deepcopy(record)
        return record

    async def mark_processed(self, record_id: str, *, error: Optional[str] = None) -> None:
        record = self.store.webhooks[record_id]
        record.processed = True
        record.error = error

    async def mark_failed(self, record_id: str, error: str) -> None:
        record = self.store.webhooks[record_id]
        record.processed = False
        record.error = error

    async def get_stats(self, tenant_id: Optional[str] = None) -> dict[str, Any]:
        records = [r for r in self.store.webhooks.values() if tenant_id is None or r.tenant_id == tenant_id]
        return {
            "total": len(records),
            "verified": sum(1 for r in records if r.signature_verified),
            "processed": sum(1 for r in records if r.processed),
            "failed": sum(1 for r in records if r.error is not None),
        }

    async def delete_older_than(self, cutoff: datetime) -> int:
        stale = [k for k, r in self.store.webhooks.items() if r.created_at and r.created_at < cutoff]
        for key in stale:
            del self.store.webhooks[key]
        return len(stale)


class FakeIdempotencyRepository(IdempotencyRepository):
    def __init__(self, store: Store):
        self.store = store

    async def get(self, tenant_id: str, key: str, scope: str) -> Optional[IdempotencyRecord]:
        record = self.store.idempotency.get((tenant_id, key, scope))
        return copy.deepcopy(record) if record else None

    async def create(self, record: IdempotencyRecord) -> bool:
        ident = (record.tenant_id, record.key, record.scope)
        if ident in self.store.idempotency:
            return False
        self.store.idempotency[ident] = copy.deepcopy(record)
        return True

    async def delete(self, tenant_id: str, key: str, scope: str) -> bool:
        return self.store.idempotency.pop((tenant_id, key, scope), None) is not None

    async def delete_expired(self, before: datetime) -> int:
        expired = [k for k, r in self.store.idempotency.items() if r.expires_at <= before]
        for ident in expired:
            del self.store.idempotency[ident]
        return len(expired)

    async def get_stats(self, tenant_id: Optional[str] = None) -> dict[str, Any]:
        records = [r for r in self.store.idempotency.values() if tenant_id is None or r.tenant_id == tenant_id]
        by_scope: dict[str, int] = {}
        for record in records:
            by_scope[record.scope] = by_scope.get(record.scope, 0) + 1
        return {"total_keys": len(records), "keys_by_scope": by_scope}


class FakeProviderConfigRepository(ProviderConfigRepository):
    def __init__(self, store: Store):
        self.store = store

    async def get(self, tenant_id: str, provider: str, environment: str) -> Optional[ProviderConfigRecord]:
        record = self.store.provider_configs.get((tenant_id, provider, environment))
        return copy.deepcopy(record) if record else None

    async def upsert(self, record: ProviderConfigRecord) -> ProviderConfigRecord:
        self.store.provider_configs[(record.tenant_id, record.provider, record.environment)] = copy.deepcopy(record)
        return record

    async def list_for_tenant(self, tenant_id: str) -> list[ProviderConfigRecord]:
        return [copy.deepcopy(r) for (t, _, _), r in self.store.provider_configs.items() if t == tenant_id]


class FakeUnitOfWork(AbstractUnitOfWork):
    def __init__(self, store: Store, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self.store = store
        self.payment_repository = FakePaymentRepository(store)
        self.refund_repository = FakeRefundRepository(store)
        self.order_repository = FakeOrderRepository(store)
        self.event_repository = FakeEventRepository(store)
        self.webhook_repository = FakeWebhookRepository(store)
        self.idempotency_repository = FakeIdempotencyRepository(store)
        self.provider_config_repository = FakeProviderConfigRepository(store)

    async def commit(self) -> None:
        self._committed = True
        self.store.commits += 1

    async def rollback(self) -> None:
        return None


class StubAdapter:
    """Scripted adapter recording every call."""

    def __init__(self, provider: str = "razorpay", environment: str = "test") -> None:
        self.provider = provider
        self.environment = environment
        self.calls: list[tuple[str, Any]] = []
        self.payment_status = PaymentStatus.CREATED
        self.refund_status = RefundStatus.PENDING
        self.create_error: Optional[Exception] = None
        self.webhook_result = WebhookVerifyResult(verified=False, error=ErrorInfo(code="NOT_SCRIPTED", message="x"))
        self.closed = False

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def create_payment(self, params):
        self.calls.append(("create_payment", params))
        if self.create_error is not None:
            raise self.create_error
        n = self.count("create_payment")
        return PaymentResult(
            payment_id=f"pay_{n}",
            provider_payment_id=f"{self.provider}_pay_{n}",
            provider_order_id=f"{self.provider}_order_{n}",
            status=self.payment_status,
            amount_minor=params.amount_minor,
            currency=params.currency,
            provider=self.provider,
            environment=self.environment,
            method=PaymentMethodInfo(type=params.preferred_method) if params.preferred_method else None,
        )

    async def verify_payment(self, params):
        self.calls.append(("verify_payment", params))
        return PaymentResult(
            payment_id=params.payment_id,
            provider_payment_id=params.provider_payment_id,
            status=self.payment_status,
            amount_minor=1000,
            currency="INR",
            provider=self.provider,
            environment=self.environment,
        )

    async def capture_payment(self, params):
        self.calls.append(("capture_payment", params))
        raise PaymentError("Manual capture is not supported", "CAPTURE_NOT_SUPPORTED", self.provider)

    async def create_refund(self, params):
        self.calls.append(("create_refund", params))
        return RefundResult(
            refund_id=f"rf_{self.count('create_refund')}",
            payment_id=params.payment_id,
            provider_refund_id=f"{self.provider}_rf",
            merchant_refund_id=params.merchant_refund_id,
            amount_minor=params.amount_minor,
            status=self.refund_status,
            provider=self.provider,
            environment=self.environment,
        )

    async def get_refund_status(self, refund_id, provider_refund_id=None, order_reference=None):
        self.calls.append(("get_refund_status", refund_id))
        return RefundResult(
            refund_id=refund_id,
            payment_id="unknown",
            provider_refund_id=provider_refund_id,
            amount_minor=1,
            status=self.refund_status,
            provider=self.provider,
            environment=self.environment,
        )

    async def verify_webhook(self, params):
        self.calls.append(("verify_webhook", params))
        return self.webhook_result

    async def health_check(self):
        return HealthCheckResult(provider=self.provider, environment=self.environment, healthy=True)

    def get_supported_methods(self):
        return ["upi", "card"]

    def get_supported_currencies(self):
        return ["INR"]

    def validate_config(self):
        return ConfigValidation(valid=True)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def store() -> Store:
    return Store()


@pytest.fixture
def uow_factory(store):
    def factory(readonly: bool = False) -> FakeUnitOfWork:
        return FakeUnitOfWork(store, readonly=readonly)

    return factory


def _enable_provider(store: Store, provider: str, *, tenant_id: str = "default", environment: str = "test", **fields):
    store.provider_configs[(tenant_id, provider, environment)] = ProviderConfigRecord(
        tenant_id=tenant_id, provider=provider, environment=environment, is_enabled=True, **fields
    )


@pytest.fixture
def enable_provider(store):
    """Store an enabled provider row, e.g. ``enable_provider("stripe")``."""

    def _enable(provider: str, **fields) -> None:
        _enable_provider(store, provider, **fields)

    return _enable


@pytest.fixture
def secrets_env() -> dict[str, str]:
    return dict(RAZORPAY_ENV)


@pytest.fixture
def config_resolver(uow_factory, secrets_env):
    return ConfigResolver(uow_factory, EnvSecretsResolver(environ=secrets_env))


@pytest.fixture
def stub_adapter() -> StubAdapter:
    return StubAdapter()


@pytest.fixture
def adapter_factory(store, config_resolver, stub_adapter):
    _enable_provider(store, "razorpay", key_id="rzp_test_key")
    return AdapterFactory(config_resolver, {PaymentProvider.RAZORPAY: lambda config: stub_adapter})


@pytest.fixture
def idempotency(uow_factory):
    return IdempotencyService(uow_factory)


@pytest.fixture
def payments_service(uow_factory, adapter_factory, idempotency):
    return PaymentsService(uow_factory, adapter_factory, idempotency, environment="test", default_provider="razorpay")


@pytest.fixture
def webhook_router(uow_factory, adapter_factory, config_resolver):
    return WebhookRouter(uow_factory, adapter_factory, config_resolver, environment="test")


@pytest.fixture
def add_payment(store):
    """Seed a payment (and its order) directly into the store."""

    def _add(
        payment_id: str = "pay_1",
        *,
        order_id: str = "order_1",
        status: str = "PENDING",
        provider: str = "razorpay",
        amount_minor: int = 1000,
        tenant_id: str = "default",
        **fields,
    ) -> Payment:
        payment = Payment(
            id=payment_id,
            tenant_id=tenant_id,
            order_id=order_id,
            provider=provider,
            environment="test",
            status=status,
            amount_authorized_minor=amount_minor,
            currency="INR",
            **fields,
        )
        store.payments[payment.id] = payment
        store.orders.setdefault(order_id, Order(id=order_id, tenant_id=tenant_id))
        return payment

    return _add


@pytest.fixture
def make_adapter():
    """Factory for extra scripted adapters: ``make_adapter("stripe")``."""
    return StubAdapter
