"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import case, select, func, or_, update

from domain.payment.entity import Order, Payment, Refund
from domain.payment.events import PaymentEvent
from domain.payment.repository import (
    OrderRepository,
    PaymentEventRepository,
    PaymentRepository,
    RefundRepository,
)
from infrastructure.models.payment import OrderModel, PaymentEventModel, PaymentModel, RefundModel
from core.logging_config import get_logger


logger = get_logger(__name__)

# 以 Payment 实体字段名为准，按名映射到 PaymentModel 列
_PAYMENT_FIELDS = (
    "tenant_id", "order_id", "provider", "environment", "status", "method_kind",
    "amount_authorized_minor", "amount_captured_minor", "amount_refunded_minor", "currency",
    "provider_payment_id", "provider_order_id", "provider_transaction_id", "provider_reference_id",
    "upi_payer_handle", "upi_utr", "upi_instrument_variant", "receipt_url",
    "failure_code", "failure_message", "idempotency_key", "created_at", "updated_at",
)

_REFUND_FIELDS = (
    "tenant_id", "payment_id", "provider", "amount_minor", "status",
    "provider_refund_id", "merchant_refund_id", "original_merchant_order_id",
    "upi_utr", "reason", "notes", "idempotency_key", "created_at", "updated_at",
)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        values = {name: getattr(model, name) for name in _PAYMENT_FIELDS}
        return Payment(id=model.id, metadata=model.extra_metadata or {}, **values)

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        values = {name: getattr(entity, name) for name in _PAYMENT_FIELDS}
        return PaymentModel(id=entity.id, extra_metadata=entity.metadata, **values)

    async def _first(self, query, for_update: bool = False) -> Optional[Payment]:
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query.limit(1))
        db_payment = result.scalars().first()
        return self._to_entity(db_payment) if db_payment else None

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        await self.session.flush()
        await self.session.refresh(db_payment)
        return self._to_entity(db_payment)

    async def get_by_id(self, tenant_id: str, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        return await self._first(
            select(PaymentModel).where(PaymentModel.tenant_id == tenant_id, PaymentModel.id == payment_id)
        )

    async def get_for_update(self, tenant_id: str, payment_id: str) -> Optional[Payment]:
        """加行锁读取支付"""
        return await self._first(
            select(PaymentModel).where(PaymentModel.tenant_id == tenant_id, PaymentModel.id == payment_id),
            for_update=True,
        )

    async def find_by_reference(
        self, tenant_id: str, provider: str, reference: str, *, for_update: bool = False
    ) -> Optional[Payment]:
        """内部ID或任意渠道引用命中即可"""
        query = (
            select(PaymentModel)
            .where(
                PaymentModel.tenant_id == tenant_id,
                PaymentModel.provider == provider,
                or_(
                    PaymentModel.id == reference,
                    PaymentModel.provider_payment_id == reference,
                    PaymentModel.provider_order_id == reference,
                    PaymentModel.provider_transaction_id == reference,
                ),
            )
            .order_by(PaymentModel.created_at.desc())
        )
        return await self._first(query, for_update=for_update)

    async def find_captured_for_order(
        self, tenant_id: str, order_id: str, statuses: List[str], *, method_kind: Optional[str] = None
    ) -> Optional[Payment]:
        """查找订单下已捕获的支付"""
        query = select(PaymentModel).where(
            PaymentModel.tenant_id == tenant_id,
            PaymentModel.order_id == order_id,
            or_(PaymentModel.status.in_(statuses), PaymentModel.amount_captured_minor > 0),
        )
        if method_kind:
            query = query.where(func.lower(PaymentModel.method_kind) == method_kind.lower())
        return await self._first(query.order_by(PaymentModel.created_at.desc()))

    async def update(self, payment: Payment) -> Payment:
        """更新支付记录"""
        result = await self.session.execute(select(PaymentModel).where(PaymentModel.id == payment.id))
        db_payment = result.scalar_one_or_none()

        if not db_payment:
            raise ValueError(f"Payment with id {payment.id} not found")

        for name in _PAYMENT_FIELDS:
            if name in ("tenant_id", "created_at"):
                continue
            setattr(db_payment, name, getattr(payment, name))
        db_payment.extra_metadata = payment.metadata

        await self.session.flush()
        await self.session.refresh(db_payment)

        logger.info(
            "payment_row_updated",
            payment_id=db_payment.id,
            order_id=db_payment.order_id,
            status=db_payment.status
        )

        return self._to_entity(db_payment)


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        """将数据库模型转换为领域实体"""
        values = {name: getattr(model, name) for name in _REFUND_FIELDS}
        return Refund(id=model.id, metadata=model.extra_metadata or {}, **values)

    def _to_model(self, entity: Refund) -> RefundModel:
        """将领域实体转换为数据库模型"""
        values = {name: getattr(entity, name) for name in _REFUND_FIELDS}
        return RefundModel(id=entity.id, extra_metadata=entity.metadata, **values)

    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        db_refund = self._to_model(refund)
        self.session.add(db_refund)
        await self.session.flush()
        await self.session.refresh(db_refund)
        return self._to_entity(db_refund)

    async def get_by_id(self, tenant_id: str, refund_id: str) -> Optional[Refund]:
        """根据ID获取退款"""
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.tenant_id == tenant_id, RefundModel.id == refund_id)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def get_by_merchant_refund_id(
        self, tenant_id: str, payment_id: str, merchant_refund_id: str
    ) -> Optional[Refund]:
        """根据商户退款号获取退款"""
        result = await self.session.execute(
            select(RefundModel)
            .where(
                RefundModel.tenant_id == tenant_id,
                RefundModel.payment_id == payment_id,
                RefundModel.merchant_refund_id == merchant_refund_id,
            )
            .limit(1)
        )
        db_refund = result.scalars().first()
        return self._to_entity(db_refund) if db_refund else None

    async def find_by_reference(
        self, tenant_id: str, provider: str, reference: str, *, for_update: bool = False
    ) -> Optional[Refund]:
        query = select(RefundModel).where(
            RefundModel.tenant_id == tenant_id,
            RefundModel.provider == provider,
            or_(
                RefundModel.id == reference,
                RefundModel.provider_refund_id == reference,
                RefundModel.merchant_refund_id == reference,
            ),
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query.limit(1))
        db_refund = result.scalars().first()
        return self._to_entity(db_refund) if db_refund else None

    async def sum_amount(self, payment_id: str, statuses: Optional[List[str]] = None,
                         exclude_statuses: Optional[List[str]] = None) -> int:
        """统计支付的退款总额"""
        query = select(func.coalesce(func.sum(RefundModel.amount_minor), 0)).where(
            RefundModel.payment_id == payment_id
        )
        if statuses:
            query = query.where(RefundModel.status.in_(statuses))
        if exclude_statuses:
            query = query.where(RefundModel.status.not_in(exclude_statuses))
        result = await self.session.execute(query)
        return int(result.scalar_one() or 0)

    async def update(self, refund: Refund) -> Refund:
        """更新退款记录"""
        result = await self.session.execute(select(RefundModel).where(RefundModel.id == refund.id))
        db_refund = result.scalar_one_or_none()

        if not db_refund:
            raise ValueError(f"Refund with id {refund.id} not found")

        db_refund.status = refund.status
        db_refund.provider_refund_id = refund.provider_refund_id
        db_refund.upi_utr = refund.upi_utr
        db_refund.amount_minor = refund.amount_minor
        db_refund.updated_at = refund.updated_at
        db_refund.extra_metadata = refund.metadata

        await self.session.flush()
        await self.session.refresh(db_refund)

        logger.info(
            "refund_row_updated",
            refund_id=db_refund.id,
            payment_id=db_refund.payment_id,
            status=db_refund.status
        )

        return self._to_entity(db_refund)


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储：只做条件更新，已支付订单不会被覆盖"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, tenant_id: str, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.tenant_id == tenant_id, OrderModel.id == order_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return Order(
            id=model.id,
            tenant_id=model.tenant_id,
            status=model.status,
            payment_status=model.payment_status,
            payment_failed_at=model.payment_failed_at,
            updated_at=model.updated_at,
        )

    async def mark_paid(self, tenant_id: str, order_id: str) -> bool:
        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.tenant_id == tenant_id,
                OrderModel.id == order_id,
                OrderModel.payment_status != "paid",
            )
            .values(
                payment_status="paid",
                status=case((OrderModel.status == "pending", "confirmed"), else_=OrderModel.status),
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        promoted = (result.rowcount or 0) > 0
        if promoted:
            logger.info("order_marked_paid", tenant_id=tenant_id, order_id=order_id)
        return promoted

    async def mark_payment_failed(self, tenant_id: str, order_id: str, failed_at: datetime) -> bool:
        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.tenant_id == tenant_id,
                OrderModel.id == order_id,
                OrderModel.payment_status != "paid",
            )
            .values(payment_status="failed", payment_failed_at=failed_at, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0


class SQLAlchemyPaymentEventRepository(PaymentEventRepository):
    """支付审计事件仓储"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, event: PaymentEvent) -> PaymentEvent:
        self.session.add(
            PaymentEventModel(
                id=event.id,
                tenant_id=event.tenant_id,
                payment_id=event.payment_id,
                refund_id=event.refund_id,
                provider=event.provider,
                environment=event.environment,
                type=event.type,
                status=event.status,
                source=event.source,
                data=event.data,
                occurred_at=event.occurred_at,
            )
        )
        await self.session.flush()
        return event

    async def list_for_payment(self, tenant_id: str, payment_id: str) -> List[PaymentEvent]:
        result = await self.session.execute(
            select(PaymentEventModel)
            .where(PaymentEventModel.tenant_id == tenant_id, PaymentEventModel.payment_id == payment_id)
            .order_by(PaymentEventModel.occurred_at.asc())
        )
        return [
            PaymentEvent(
                id=m.id,
                tenant_id=m.tenant_id,
                provider=m.provider,
                type=m.type,
                environment=m.environment,
                payment_id=m.payment_id,
                refund_id=m.refund_id,
                status=m.status,
                data=m.data or {},
                source=m.source,
                occurred_at=m.occurred_at,
            )
            for m in result.scalars().all()
        ]
