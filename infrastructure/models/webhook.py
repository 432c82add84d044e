"""
Webhook 收件箱与渠道配置模型
"""
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventModel(Base):
    """
    Webhook 收件箱

    验签前后都会落库，(provider, dedupe_key) 唯一，用于重放判断
    """
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    dedupe_key = Column(String(64), nullable=False, comment="sha256 去重键")
    event_type = Column(String(100), nullable=True)
    signature_verified = Column(Boolean, nullable=False, default=False)
    processed = Column(Boolean, nullable=False, default=False)
    payload = Column(JSON, nullable=True, comment="原始报文与标识")
    error = Column(Text, nullable=True, comment="拒绝原因或处理异常")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("uq_webhook_events_provider_dedupe", "provider", "dedupe_key", unique=True),
    )

    def __repr__(self):
        return f"<WebhookEventModel(id='{self.id}', provider='{self.provider}', processed={self.processed})>"


class ProviderConfigModel(Base):
    """渠道非敏感配置，密钥只来自环境变量"""
    __tablename__ = "provider_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)
    environment = Column(String(16), nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=False)
    display_name = Column(String(100), nullable=True)
    merchant_id = Column(String(200), nullable=True)
    key_id = Column(String(200), nullable=True)
    access_code = Column(String(200), nullable=True)
    app_id = Column(String(200), nullable=True)
    publishable_key = Column(String(200), nullable=True)
    salt_index = Column(Integer, nullable=True)
    account_id = Column(String(200), nullable=True)
    success_url = Column(String(500), nullable=True)
    failure_url = Column(String(500), nullable=True)
    webhook_url = Column(String(500), nullable=True)
    capabilities = Column(JSON, nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("uq_provider_configs_tenant_provider_env", "tenant_id", "provider", "environment", unique=True),
    )
