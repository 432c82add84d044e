"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, JSON,
    Index, ForeignKey
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键（渠道返回的支付ID或内部生成的UUID）
    id = Column(String(100), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True, comment="租户ID")

    # 订单信息
    order_id = Column(String(100), index=True, nullable=False, comment="订单ID")

    # 支付渠道信息
    provider = Column(String(32), nullable=False, index=True, comment="支付渠道: razorpay/cashfree/phonepe/stripe 等")
    environment = Column(String(16), nullable=False, default="test", comment="环境: test/live")
    method_kind = Column(String(32), nullable=True, comment="支付方式: upi/card/netbanking 等")
    provider_payment_id = Column(String(200), nullable=True, index=True, comment="渠道支付ID")
    provider_order_id = Column(String(200), nullable=True, index=True, comment="渠道订单ID")
    provider_transaction_id = Column(String(200), nullable=True, comment="渠道交易流水号")
    provider_reference_id = Column(String(200), nullable=True, comment="渠道参考号")

    # 金额信息（最小货币单位，整数）
    amount_authorized_minor = Column(BigInteger, nullable=False, comment="授权金额")
    amount_captured_minor = Column(BigInteger, nullable=False, default=0, comment="已捕获金额")
    amount_refunded_minor = Column(BigInteger, nullable=False, default=0, comment="已退款金额")
    currency = Column(String(3), nullable=False, default="INR", comment="货币代码 ISO-4217")

    # 状态（生命周期存储值: CREATED/PENDING/COMPLETED/FAILED/CANCELLED）
    status = Column(String(32), nullable=False, default="CREATED", index=True, comment="支付状态")

    # UPI 信息（PhonePe 等渠道仅保存掩码）
    upi_payer_handle = Column(String(200), nullable=True, comment="付款人VPA")
    upi_utr = Column(String(64), nullable=True, comment="UTR")
    upi_instrument_variant = Column(String(64), nullable=True, comment="UPI 工具类型")
    receipt_url = Column(String(500), nullable=True, comment="收据链接")

    # 失败原因
    failure_code = Column(String(100), nullable=True, comment="失败码")
    failure_message = Column(Text, nullable=True, comment="失败原因")

    idempotency_key = Column(String(200), nullable=True, comment="幂等键")

    # 元数据（使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")

    # 关系
    refunds = relationship("RefundModel", back_populates="payment", lazy="select")

    # 索引
    __table_args__ = (
        Index("ix_payments_tenant_order", "tenant_id", "order_id"),
        Index("ix_payments_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id='{self.id}', order_id='{self.order_id}', "
            f"provider='{self.provider}', amount={self.amount_authorized_minor}, status='{self.status}')>"
        )


class RefundModel(Base):
    """
    退款数据库模型

    退款作为支付聚合的一部分，记录支付的退款明细
    """
    __tablename__ = "refunds"

    # 主键
    id = Column(String(100), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True, comment="租户ID")

    # 关联支付
    payment_id = Column(
        String(100),
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )

    # 退款渠道信息
    provider = Column(String(32), nullable=False, comment="支付渠道")
    provider_refund_id = Column(String(200), nullable=True, index=True, comment="渠道退款ID")
    merchant_refund_id = Column(String(200), nullable=True, comment="商户退款号")
    original_merchant_order_id = Column(String(200), nullable=True, comment="原商户订单号")

    # 金额信息
    amount_minor = Column(BigInteger, nullable=False, comment="退款金额（最小货币单位）")

    # 状态
    status = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="退款状态: pending/processing/completed/failed/cancelled"
    )

    upi_utr = Column(String(64), nullable=True, comment="UTR（掩码）")
    reason = Column(Text, nullable=True, comment="退款原因")
    notes = Column(Text, nullable=True, comment="备注")
    idempotency_key = Column(String(200), nullable=True, comment="幂等键")

    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")

    # 关系
    payment = relationship("PaymentModel", back_populates="refunds")

    # 索引
    __table_args__ = (
        Index("ix_refunds_payment_status", "payment_id", "status"),
        Index("ix_refunds_merchant_refund_id", "payment_id", "merchant_refund_id"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id='{self.id}', payment_id='{self.payment_id}', "
            f"amount={self.amount_minor}, status='{self.status}')>"
        )


class PaymentEventModel(Base):
    """支付审计事件（仅追加）"""
    __tablename__ = "payment_events"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    payment_id = Column(String(100), nullable=True, index=True, comment="关联支付，安全/审计事件可为空")
    refund_id = Column(String(100), nullable=True)
    provider = Column(String(32), nullable=False)
    environment = Column(String(16), nullable=False, default="test")
    type = Column(String(100), nullable=False, index=True, comment="事件类型")
    status = Column(String(32), nullable=True)
    source = Column(String(16), nullable=False, default="api", comment="api/webhook/system")
    data = Column(JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)


class OrderModel(Base):
    """订单表中支付核心需要读写的部分"""
    __tablename__ = "orders"

    id = Column(String(100), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False, default="pending", comment="订单状态")
    payment_status = Column(String(32), nullable=False, default="pending", comment="支付状态: pending/paid/failed")
    payment_failed_at = Column(DateTime(timezone=True), nullable=True)
    total_minor = Column(BigInteger, nullable=True, comment="订单金额（最小货币单位）")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class IdempotencyKeyModel(Base):
    """幂等键存储，(tenant_id, key, scope) 唯一"""
    __tablename__ = "idempotency_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    key = Column(String(200), nullable=False)
    scope = Column(String(64), nullable=False)
    response = Column(JSON, nullable=False, comment="成功结果或已定义的失败")
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("uq_idempotency_tenant_key_scope", "tenant_id", "key", "scope", unique=True),
    )
