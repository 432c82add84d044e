"""
Webhook 收件箱仓储实现
"""
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.entity import WebhookRecord
from domain.payment.repository import WebhookEventRepository
from infrastructure.models.webhook import WebhookEventModel


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):
    """Webhook 收件箱仓储"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: WebhookEventModel) -> WebhookRecord:
        return WebhookRecord(
            id=model.id,
            tenant_id=model.tenant_id,
            provider=model.provider,
            dedupe_key=model.dedupe_key,
            event_type=model.event_type,
            signature_verified=bool(model.signature_verified),
            processed=bool(model.processed),
            payload=model.payload or {},
            error=model.error,
            created_at=model.created_at,
            processed_at=model.processed_at,
        )

    async def get_by_dedupe_key(self, provider: str, dedupe_key: str) -> Optional[WebhookRecord]:
        result = await self.session.execute(
            select(WebhookEventModel).where(
                WebhookEventModel.provider == provider,
                WebhookEventModel.dedupe_key == dedupe_key,
            )
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def create(self, record: WebhookRecord) -> WebhookRecord:
        model = WebhookEventModel(
            id=record.id,
            tenant_id=record.tenant_id,
            provider=record.provider,
            dedupe_key=record.dedupe_key,
            event_type=record.event_type,
            signature_verified=record.signature_verified,
            processed=record.processed,
            payload=record.payload,
            error=record.error,
            created_at=record.created_at or datetime.now(timezone.utc),
        )
        self.session.add(model)
        await self.session.flush()
        return self._to_entity(model)

    async def _get_model(self, record_id: str) -> WebhookEventModel:
        result = await self.session.execute(select(WebhookEventModel).where(WebhookEventModel.id == record_id))
        model = result.scalar_one_or_none()
        if model is None:
            raise ValueError(f"Webhook record {record_id} not found")
        return model

    async def mark_processed(self, record_id: str, *, error: Optional[str] = None) -> None:
        model = await self._get_model(record_id)
        model.processed = True
        model.processed_at = datetime.now(timezone.utc)
        model.error = error
        await self.session.flush()

    async def mark_failed(self, record_id: str, error: str) -> None:
        model = await self._get_model(record_id)
        model.processed = False
        model.error = error
        await self.session.flush()

    async def get_stats(self, tenant_id: Optional[str] = None) -> dict[str, Any]:
        """按渠道统计 total/verified/processed/failed"""
        query = select(
            WebhookEventModel.provider,
            func.count(WebhookEventModel.id),
            func.sum(case((WebhookEventModel.signature_verified.is_(True), 1), else_=0)),
            func.sum(case((WebhookEventModel.processed.is_(True), 1), else_=0)),
            func.sum(case((WebhookEventModel.error.is_not(None), 1), else_=0)),
        ).group_by(WebhookEventModel.provider)
        if tenant_id:
            query = query.where(WebhookEventModel.tenant_id == tenant_id)
        result = await self.session.execute(query)

        stats: dict[str, Any] = {"total": 0, "verified": 0, "processed": 0, "failed": 0, "by_provider": {}}
        for provider, total, verified, processed, failed in result.all():
            stats["total"] += int(total or 0)
            stats["verified"] += int(verified or 0)
            stats["processed"] += int(processed or 0)
            stats["failed"] += int(failed or 0)
            stats["by_provider"][provider] = int(total or 0)
        return stats

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self.session.execute(delete(WebhookEventModel).where(WebhookEventModel.created_at < cutoff))
        return int(result.rowcount or 0)
