"""
幂等键仓储实现
"""
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import IdempotencyRecord
from domain.payment.repository import IdempotencyRepository
from infrastructure.models.payment import IdempotencyKeyModel


logger = get_logger(__name__)


class SQLAlchemyIdempotencyRepository(IdempotencyRepository):
    """幂等键仓储"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: str, key: str, scope: str) -> Optional[IdempotencyRecord]:
        result = await self.session.execute(
            select(IdempotencyKeyModel).where(
                IdempotencyKeyModel.tenant_id == tenant_id,
                IdempotencyKeyModel.key == key,
                IdempotencyKeyModel.scope == scope,
            )
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return IdempotencyRecord(
            key=model.key,
            scope=model.scope,
            tenant_id=model.tenant_id,
            response=model.response or {},
            expires_at=model.expires_at,
            created_at=model.created_at,
        )

    async def create(self, record: IdempotencyRecord) -> bool:
        """并发写入同一键时由唯一索引兜底，返回 False"""
        try:
            self.session.add(
                IdempotencyKeyModel(
                    tenant_id=record.tenant_id,
                    key=record.key,
                    scope=record.scope,
                    response=record.response,
                    expires_at=record.expires_at,
                    created_at=record.created_at or datetime.now(timezone.utc),
                )
            )
            await self.session.flush()
            return True
        except IntegrityError:
            await self.session.rollback()
            logger.warning("idempotency_key_conflict", scope=record.scope, tenant_id=record.tenant_id)
            return False

    async def delete(self, tenant_id: str, key: str, scope: str) -> bool:
        result = await self.session.execute(
            delete(IdempotencyKeyModel).where(
                IdempotencyKeyModel.tenant_id == tenant_id,
                IdempotencyKeyModel.key == key,
                IdempotencyKeyModel.scope == scope,
            )
        )
        return (result.rowcount or 0) > 0

    async def delete_expired(self, before: datetime) -> int:
        result = await self.session.execute(delete(IdempotencyKeyModel).where(IdempotencyKeyModel.expires_at <= before))
        return int(result.rowcount or 0)

    async def get_stats(self, tenant_id: Optional[str] = None) -> dict[str, Any]:
        query = select(
            IdempotencyKeyModel.scope,
            func.count(IdempotencyKeyModel.id),
            func.min(IdempotencyKeyModel.created_at),
            func.max(IdempotencyKeyModel.created_at),
        ).group_by(IdempotencyKeyModel.scope)
        if tenant_id:
            query = query.where(IdempotencyKeyModel.tenant_id == tenant_id)
        result = await self.session.execute(query)

        stats: dict[str, Any] = {"total_keys": 0, "keys_by_scope": {}, "oldest_key": None, "newest_key": None}
        for scope, count, oldest, newest in result.all():
            stats["total_keys"] += int(count or 0)
            stats["keys_by_scope"][scope] = int(count or 0)
            if oldest is not None and (stats["oldest_key"] is None or oldest < stats["oldest_key"]):
                stats["oldest_key"] = oldest
            if newest is not None and (stats["newest_key"] is None or newest > stats["newest_key"]):
                stats["newest_key"] = newest
        return stats
