"""
Request ID / 租户上下文中间件

生成或透传 X-Request-ID，读取 X-Tenant-ID，并绑定到 structlog 上下文，
使支付、退款、回调处理中的每条日志都可按请求与租户检索。
"""
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or (request.client.host if request.client else "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    HEADER_NAME = "X-Request-ID"
    TENANT_HEADER = "X-Tenant-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        tenant_id = (request.headers.get(self.TENANT_HEADER) or "").strip() or None
        client_ip = _client_ip(request)

        request.state.request_id = request_id
        request.state.tenant_id = tenant_id
        request_id_var.set(request_id)
        tenant_id_var.set(tenant_id)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, client_ip=client_ip)
        if tenant_id:
            structlog.contextvars.bind_contextvars(tenant_id=tenant_id)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response


def get_request_id() -> Optional[str]:
    """当前请求的 request_id，不在请求上下文中时为 None"""
    return request_id_var.get()


def current_tenant_id() -> Optional[str]:
    return tenant_id_var.get()
