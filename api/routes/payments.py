"""
Payments API routes.

Thin layer over ``PaymentsService`` / ``WebhookRouter``: tenant comes from the
``X-Tenant-ID`` header, idempotency keys from ``Idempotency-Key``. Domain
errors are turned into the standard envelope by the global exception handlers.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.dependencies import (
    get_config_resolver,
    get_idempotency_key,
    get_idempotency_service,
    get_payments_service,
    get_tenant_id,
    get_webhook_router,
)
from application.dtos.payments import (
    CancelPaymentParams,
    CapturePaymentParams,
    CreatePaymentParams,
    CreateRefundParams,
    VerifyPaymentParams,
)
from application.dtos.provider_config import ProviderConfigUpdate
from application.services.config_resolver import ConfigResolver
from application.services.idempotency_service import IdempotencyService
from application.services.payment_service import PaymentsService
from application.services.webhook_router import WebhookRouter
from core.response import success_response
from core.logging_config import get_logger


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post("", summary="Create payment")
async def create_payment(
    payload: CreatePaymentParams,
    provider: Optional[str] = Query(default=None, description="Preferred provider; falls back when unavailable"),
    tenant_id: Optional[str] = Depends(get_tenant_id),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    service: PaymentsService = Depends(get_payments_service),
):
    result = await service.create_payment(payload, tenant_id, provider=provider, idempotency_key=idempotency_key)
    return success_response(data=result.model_dump(mode="json"), message="Payment created")


@router.get("/health", summary="Provider health")
async def payments_health(
    tenant_id: Optional[str] = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    results = await service.perform_health_check(tenant_id)
    return success_response(
        data={provider: result.model_dump(mode="json") for provider, result in results.items()},
        message="Health check completed",
    )


@router.get("/providers", summary="Provider configuration status")
async def provider_status(
    tenant_id: Optional[str] = Depends(get_tenant_id),
    resolver: ConfigResolver = Depends(get_config_resolver),
):
    return success_response(data=await resolver.get_provider_status(tenant_id))


@router.put("/providers/config", summary="Upsert non-secret provider config")
async def update_provider_config(
    payload: ProviderConfigUpdate,
    request: Request,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    resolver: ConfigResolver = Depends(get_config_resolver),
):
    record = await resolver.update_config(payload, tenant_id)
    # 新配置生效前丢弃按旧配置构建的适配器
    factory = getattr(request.app.state, "adapter_factory", None)
    if factory is not None:
        await factory.clear_cache(record.provider, record.environment, record.tenant_id)
    return success_response(
        data={
            "provider": record.provider,
            "environment": record.environment,
            "enabled": record.is_enabled,
            "display_name": record.display_name,
        },
        message="Provider config updated",
    )


@router.get("/idempotency/stats", summary="Idempotency key statistics")
async def idempotency_stats(
    tenant_id: Optional[str] = Depends(get_tenant_id),
    idempotency: IdempotencyService = Depends(get_idempotency_service),
):
    stats = await idempotency.get_stats(tenant_id)
    return success_response(data=stats)


@router.get("/webhooks/stats", summary="Webhook inbox statistics")
async def webhook_stats(
    tenant_id: Optional[str] = Depends(get_tenant_id),
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    return success_response(data=await webhook_router.get_webhook_stats(tenant_id))


@router.post("/webhooks/{provider}", summary="Provider webhook")
async def payments_webhook(
    provider: str,
    request: Request,
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    # 验签需要原始字节，不能经过 JSON 解析
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    result = await webhook_router.process_webhook(provider, headers, raw_body)
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post("/refunds", summary="Create refund")
async def create_refund(
    payload: CreateRefundParams,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    service: PaymentsService = Depends(get_payments_service),
):
    result = await service.create_refund(payload, tenant_id, idempotency_key=idempotency_key)
    return success_response(data=result.model_dump(mode="json"), message="Refund created")


@router.get("/refunds/{refund_id}", summary="Refund status")
async def refund_status(
    refund_id: str,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    result = await service.get_refund_status(refund_id, tenant_id)
    return success_response(data=result.model_dump(mode="json"))


@router.get("/{payment_id}", summary="Get payment")
async def get_payment(
    payment_id: str,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    result = await service.get_payment(payment_id, tenant_id)
    return success_response(data=result.model_dump(mode="json"))


@router.post("/{payment_id}/verify", summary="Verify payment with provider")
async def verify_payment(
    payment_id: str,
    payload: Optional[VerifyPaymentParams] = None,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    params = (payload or VerifyPaymentParams(payment_id=payment_id)).model_copy(update={"payment_id": payment_id})
    result = await service.verify_payment(params, tenant_id)
    return success_response(data=result.model_dump(mode="json"), message="Payment verified")


@router.post("/{payment_id}/capture", summary="Capture payment")
async def capture_payment(
    payment_id: str,
    payload: Optional[CapturePaymentParams] = None,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    service: PaymentsService = Depends(get_payments_service),
):
    params = (payload or CapturePaymentParams(payment_id=payment_id)).model_copy(update={"payment_id": payment_id})
    result = await service.capture_payment(params, tenant_id, idempotency_key=idempotency_key)
    return success_response(data=result.model_dump(mode="json"), message="Payment captured")


@router.post("/{payment_id}/cancel", summary="Cancel checkout")
async def cancel_payment(
    payment_id: str,
    payload: Optional[CancelPaymentParams] = None,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    service: PaymentsService = Depends(get_payments_service),
):
    params = (payload or CancelPaymentParams(payment_id=payment_id)).model_copy(update={"payment_id": payment_id})
    result = await service.cancel_payment(params, tenant_id, idempotency_key=idempotency_key)
    logger.info("checkout_cancel_requested", payment_id=payment_id)
    return success_response(data=result.model_dump(mode="json"), message="Payment cancelled")
