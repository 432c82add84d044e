"""Periodic housekeeping for the idempotency store and the webhook inbox."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from celery import shared_task

from application.services.adapter_factory import AdapterFactory
from application.services.config_resolver import ConfigResolver
from application.services.idempotency_service import IdempotencyService
from application.services.webhook_router import WebhookRouter
from core.logging_config import get_logger
from core.settings import payment_settings
from infrastructure.database import engine
from infrastructure.external.payments.secrets import EnvSecretsResolver
from infrastructure.tasks.utils.base_task import BaseTask
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)

T = TypeVar("T")


def _run(job: Callable[[], Awaitable[T]]) -> T:
    async def _wrapped() -> T:
        try:
            return await job()
        finally:
            # 连接池绑定在本次事件循环上
            await engine.dispose()

    return asyncio.run(_wrapped())


def _webhook_router() -> WebhookRouter:
    resolver = ConfigResolver(SQLAlchemyUnitOfWork, EnvSecretsResolver(prefix=payment_settings.secrets_prefix))
    return WebhookRouter(SQLAlchemyUnitOfWork, AdapterFactory(resolver), resolver)


@shared_task(
    name="payments.cleanup_expired_idempotency_keys",
    base=BaseTask,
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def cleanup_expired_idempotency_keys(self, days: int = 0) -> dict:
    """Delete idempotency records that expired at least ``days`` days ago."""
    try:
        deleted = _run(lambda: IdempotencyService(SQLAlchemyUnitOfWork).cleanup_expired(days))
    except Exception as exc:
        logger.error("idempotency_cleanup_failed", error=str(exc))
        raise self.retry(exc=exc)
    return {"deleted": deleted}


@shared_task(
    name="payments.cleanup_old_webhooks",
    base=BaseTask,
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def cleanup_old_webhooks(self, older_than_days: Optional[int] = None) -> dict:
    """Delete webhook inbox rows past the retention window (settings default)."""
    try:
        deleted = _run(lambda: _webhook_router().cleanup_old_webhooks(older_than_days))
    except Exception as exc:
        logger.error("webhook_cleanup_failed", error=str(exc))
        raise self.retry(exc=exc)
    return {"deleted": deleted}
