"""
渠道配置仓储实现
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.entity import ProviderConfigRecord
from domain.payment.repository import ProviderConfigRepository
from infrastructure.models.webhook import ProviderConfigModel


_CONFIG_FIELDS = (
    "is_enabled", "display_name", "merchant_id", "key_id", "access_code", "app_id",
    "publishable_key", "salt_index", "account_id", "success_url", "failure_url", "webhook_url",
)


class SQLAlchemyProviderConfigRepository(ProviderConfigRepository):
    """渠道配置仓储"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ProviderConfigModel) -> ProviderConfigRecord:
        values = {name: getattr(model, name) for name in _CONFIG_FIELDS}
        return ProviderConfigRecord(
            tenant_id=model.tenant_id,
            provider=model.provider,
            environment=model.environment,
            capabilities=model.capabilities or {},
            metadata=model.extra_metadata or {},
            updated_at=model.updated_at,
            **values,
        )

    async def _get_model(self, tenant_id: str, provider: str, environment: str) -> Optional[ProviderConfigModel]:
        result = await self.session.execute(
            select(ProviderConfigModel).where(
                ProviderConfigModel.tenant_id == tenant_id,
                ProviderConfigModel.provider == provider,
                ProviderConfigModel.environment == environment,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, tenant_id: str, provider: str, environment: str) -> Optional[ProviderConfigRecord]:
        model = await self._get_model(tenant_id, provider, environment)
        return self._to_entity(model) if model else None

    async def upsert(self, record: ProviderConfigRecord) -> ProviderConfigRecord:
        model = await self._get_model(record.tenant_id, record.provider, record.environment)
        if model is None:
            model = ProviderConfigModel(
                tenant_id=record.tenant_id, provider=record.provider, environment=record.environment
            )
            self.session.add(model)
        for name in _CONFIG_FIELDS:
            setattr(model, name, getattr(record, name))
        model.capabilities = record.capabilities
        model.extra_metadata = record.metadata
        model.updated_at = datetime.now(timezone.utc)
        await self.session.flush()
        await self.session.refresh(model)
        return self._to_entity(model)

    async def list_for_tenant(self, tenant_id: str) -> List[ProviderConfigRecord]:
        result = await self.session.execute(
            select(ProviderConfigModel)
            .where(ProviderConfigModel.tenant_id == tenant_id)
            .order_by(ProviderConfigModel.provider, ProviderConfigModel.environment)
        )
        return [self._to_entity(m) for m in result.scalars().all()]
