"""
请求/响应访问日志

webhook 原始报文从不记录；其他请求体仅在显式开启时记录，并对凭证类字段脱敏、对 UPI 标识打码。
"""
import json
import time
from typing import Any
from urllib.parse import parse_qs

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.config import settings
from core.logging_config import get_logger
from shared.upi import mask_utr, mask_vpa


logger = get_logger(__name__)

_TRUTHY = {"true", "1", "yes"}
_FALSY = {"false", "0", "no"}


class LoggingMiddleware(BaseHTTPMiddleware):
    """记录请求开始、结束耗时与异常，附带租户与幂等键上下文"""

    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    # 渠道回调需要原样验签，正文不落日志
    NO_BODY_PATH_MARKERS = ("/webhooks/",)

    SECRET_FIELDS = {
        "password", "token", "secret", "api_key", "access_token", "key_secret",
        "client_secret", "salt", "salt_key", "authorization", "signature",
    }
    VPA_FIELDS = {"vpa", "payer_handle", "upi_payer_handle"}
    UTR_FIELDS = {"utr", "upi_utr"}

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.body_log_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        context = await self._request_context(request)
        logger.info("request_started", **context)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=round(time.perf_counter() - started, 4),
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
                **context,
            )
            raise

        duration = time.perf_counter() - started
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        self._log_completion(response, round(duration, 4), context)
        return response

    async def _request_context(self, request: Request) -> dict:
        context: dict[str, Any] = {
            "method": request.method,
            "path": request.url.path,
            "tenant_id": request.headers.get("X-Tenant-ID") or "default",
        }
        if request.query_params:
            context["query_params"] = self._sanitize(dict(request.query_params))
        if request.headers.get("Idempotency-Key"):
            context["has_idempotency_key"] = True

        if request.method in ("POST", "PUT", "PATCH") and self._should_log_body(request):
            body = await self._read_body(request)
            if body is not None:
                context["body"] = body
        return context

    def _should_log_body(self, request: Request) -> bool:
        if any(marker in request.url.path for marker in self.NO_BODY_PATH_MARKERS):
            return False
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in _TRUTHY:
            return True
        if header in _FALSY:
            return False
        return bool(self.body_log_default and settings.DEBUG)

    async def _read_body(self, request: Request) -> Any:
        raw = await request.body()
        if not raw:
            return None

        text = raw[: self.max_body_bytes].decode("utf-8", errors="ignore")
        content_type = request.headers.get("content-type", "").lower()
        if "application/json" in content_type:
            try:
                return self._sanitize(json.loads(text))
            except ValueError:
                return text
        if "application/x-www-form-urlencoded" in content_type:
            form = {k: v if len(v) > 1 else v[0] for k, v in parse_qs(text).items()}
            return self._sanitize(form)
        return text

    def _sanitize(self, data: Any) -> Any:
        if isinstance(data, dict):
            cleaned = {}
            for key, value in data.items():
                name = str(key).lower()
                if name in self.SECRET_FIELDS:
                    cleaned[key] = "***"
                elif name in self.VPA_FIELDS and isinstance(value, str):
                    cleaned[key] = mask_vpa(value)
                elif name in self.UTR_FIELDS and isinstance(value, str):
                    cleaned[key] = mask_utr(value)
                else:
                    cleaned[key] = self._sanitize(value)
            return cleaned
        if isinstance(data, list):
            return [self._sanitize(item) for item in data]
        return data

    def _log_completion(self, response: Response, duration: float, context: dict) -> None:
        status_code = response.status_code
        if status_code >= 500:
            logger.error("request_server_error", status_code=status_code, duration=duration, **context)
        elif status_code >= 400:
            logger.warning("request_client_error", status_code=status_code, duration=duration, **context)
        else:
            logger.info("request_completed", status_code=status_code, duration=duration, **context)
