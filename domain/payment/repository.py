"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, List

from .entity import (
    IdempotencyRecord,
    Order,
    Payment,
    ProviderConfigRecord,
    Refund,
    WebhookRecord,
)
from .events import PaymentEvent


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        pass

    @abstractmethod
    async def get_by_id(self, tenant_id: str, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_for_update(self, tenant_id: str, payment_id: str) -> Optional[Payment]:
        """加行锁读取支付（SELECT ... FOR UPDATE）"""
        pass

    @abstractmethod
    async def find_by_reference(
        self, tenant_id: str, provider: str, reference: str, *, for_update: bool = False
    ) -> Optional[Payment]:
        """按内部ID或任意渠道引用（payment/order/transaction id）查找支付"""
        pass

    @abstractmethod
    async def find_captured_for_order(
        self, tenant_id: str, order_id: str, statuses: List[str], *, method_kind: Optional[str] = None
    ) -> Optional[Payment]:
        """查找订单下已捕获的支付（status 命中或已有捕获金额），用于重复扣款保护"""
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """更新支付记录"""
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        pass

    @abstractmethod
    async def get_by_id(self, tenant_id: str, refund_id: str) -> Optional[Refund]:
        """根据ID获取退款"""
        pass

    @abstractmethod
    async def get_by_merchant_refund_id(
        self, tenant_id: str, payment_id: str, merchant_refund_id: str
    ) -> Optional[Refund]:
        """根据商户退款号获取退款"""
        pass

    @abstractmethod
    async def find_by_reference(
        self, tenant_id: str, provider: str, reference: str, *, for_update: bool = False
    ) -> Optional[Refund]:
        """按内部ID、渠道退款ID或商户退款号查找退款"""
        pass

    @abstractmethod
    async def sum_amount(self, payment_id: str, statuses: Optional[List[str]] = None,
                         exclude_statuses: Optional[List[str]] = None) -> int:
        """统计支付的退款总额（最小货币单位）"""
        pass

    @abstractmethod
    async def update(self, refund: Refund) -> Refund:
        """更新退款记录"""
        pass


class OrderRepository(ABC):
    """订单仓储（只暴露支付核心需要的写操作）"""

    @abstractmethod
    async def get_by_id(self, tenant_id: str, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def mark_paid(self, tenant_id: str, order_id: str) -> bool:
        """条件更新：未支付的订单提升为 paid/confirmed，返回是否有写入"""
        pass

    @abstractmethod
    async def mark_payment_failed(self, tenant_id: str, order_id: str, failed_at: datetime) -> bool:
        """条件更新：未支付的订单标记失败时间，返回是否有写入"""
        pass


class PaymentEventRepository(ABC):
    """支付审计事件（仅追加）"""

    @abstractmethod
    async def add(self, event: PaymentEvent) -> PaymentEvent:
        pass

    @abstractmethod
    async def list_for_payment(self, tenant_id: str, payment_id: str) -> List[PaymentEvent]:
        pass


class WebhookEventRepository(ABC):
    """Webhook 收件箱，(provider, dedupe_key) 唯一"""

    @abstractmethod
    async def get_by_dedupe_key(self, provider: str, dedupe_key: str) -> Optional[WebhookRecord]:
        pass

    @abstractmethod
    async def create(self, record: WebhookRecord) -> WebhookRecord:
        pass

    @abstractmethod
    async def mark_processed(self, record_id: str, *, error: Optional[str] = None) -> None:
        """标记处理完成；error 记录拒绝原因（签名/授权失败）"""
        pass

    @abstractmethod
    async def mark_failed(self, record_id: str, error: str) -> None:
        """记录处理异常，保持未处理状态以便渠道重投时重新处理"""
        pass

    @abstractmethod
    async def get_stats(self, tenant_id: Optional[str] = None) -> dict[str, Any]:
        """按渠道统计 total/processed/failed/verified"""
        pass

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        pass


class IdempotencyRepository(ABC):
    """幂等键存储，(tenant_id, key, scope) 唯一"""

    @abstractmethod
    async def get(self, tenant_id: str, key: str, scope: str) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    async def create(self, record: IdempotencyRecord) -> bool:
        """插入记录；并发重复插入时返回 False 而不是抛错"""
        pass

    @abstractmethod
    async def delete(self, tenant_id: str, key: str, scope: str) -> bool:
        pass

    @abstractmethod
    async def delete_expired(self, before: datetime) -> int:
        pass

    @abstractmethod
    async def get_stats(self, tenant_id: Optional[str] = None) -> dict[str, Any]:
        pass


class ProviderConfigRepository(ABC):
    """渠道非敏感配置"""

    @abstractmethod
    async def get(self, tenant_id: str, provider: str, environment: str) -> Optional[ProviderConfigRecord]:
        pass

    @abstractmethod
    async def upsert(self, record: ProviderConfigRecord) -> ProviderConfigRecord:
        pass

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str) -> List[ProviderConfigRecord]:
        pass
