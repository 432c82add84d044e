"""
API依赖项 - 从 app.state 取出在 lifespan 中构建的支付服务
"""
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from application.services.adapter_factory import AdapterFactory
from application.services.config_resolver import ConfigResolver
from application.services.idempotency_service import IdempotencyService
from application.services.payment_service import PaymentsService
from application.services.webhook_router import WebhookRouter


def _from_state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} 未初始化",
        )
    return service


async def get_payments_service(request: Request) -> PaymentsService:
    return _from_state(request, "payments_service")


async def get_webhook_router(request: Request) -> WebhookRouter:
    return _from_state(request, "webhook_router")


async def get_config_resolver(request: Request) -> ConfigResolver:
    return _from_state(request, "config_resolver")


async def get_adapter_factory(request: Request) -> AdapterFactory:
    return _from_state(request, "adapter_factory")


async def get_idempotency_service(request: Request) -> IdempotencyService:
    return _from_state(request, "idempotency_service")


async def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """X-Tenant-ID 请求头，缺省时由服务层回落到 default 租户"""
    if x_tenant_id is None:
        return None
    return x_tenant_id.strip() or None


async def get_idempotency_key(idempotency_key: Optional[str] = Header(default=None)) -> Optional[str]:
    """Idempotency-Key 请求头"""
    if idempotency_key is None:
        return None
    return idempotency_key.strip() or None
