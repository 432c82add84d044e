"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import (
    IdempotencyRepository,
    OrderRepository,
    PaymentEventRepository,
    PaymentRepository,
    ProviderConfigRepository,
    RefundRepository,
    WebhookEventRepository,
)


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象"""

    payment_repository: PaymentRepository
    refund_repository: RefundRepository
    order_repository: OrderRepository
    event_repository: PaymentEventRepository
    webhook_repository: WebhookEventRepository
    idempotency_repository: IdempotencyRepository
    provider_config_repository: ProviderConfigRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.payment_repository = None  # type: ignore[assignment]
        self.refund_repository = None  # type: ignore[assignment]
        self.order_repository = None  # type: ignore[assignment]
        self.event_repository = None  # type: ignore[assignment]
        self.webhook_repository = None  # type: ignore[assignment]
        self.idempotency_repository = None  # type: ignore[assignment]
        self.provider_config_repository = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
