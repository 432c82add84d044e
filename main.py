"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from application.services.adapter_factory import AdapterFactory
from application.services.config_resolver import ConfigResolver
from application.services.idempotency_service import IdempotencyService
from application.services.payment_service import PaymentsService
from application.services.webhook_router import WebhookRouter
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from core.settings import payment_settings
from infrastructure.cache import init_redis_cache, shutdown_redis_cache
from infrastructure.database import create_tables
from infrastructure.external.payments import build_adapter_registry
from infrastructure.external.payments.secrets import EnvSecretsResolver
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


async def _build_distributed_lock():
    """按配置启用 Redis 幂等锁；Redis 不可用时退回进程内锁"""
    if not payment_settings.idempotency.use_redis_lock:
        return None
    if not settings.redis.url:
        logger.warning("idempotency_redis_lock_disabled", reason="REDIS__URL not set")
        return None
    try:
        cache = await init_redis_cache()
    except Exception as exc:
        logger.error("redis_cache_init_failed", error=str(exc))
        return None
    logger.info("idempotency_redis_lock_enabled")
    return cache


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：构建支付服务并挂到 app.state"""
    # 启动时创建数据库表（仅开发环境）
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info("database_migrations_required", message="No auto-create outside DEBUG")

    config_resolver = ConfigResolver(
        SQLAlchemyUnitOfWork,
        EnvSecretsResolver(prefix=payment_settings.secrets_prefix),
    )
    adapter_factory = AdapterFactory(
        config_resolver,
        build_adapter_registry(),
        default_provider=payment_settings.default_provider,
    )
    idempotency = IdempotencyService(
        SQLAlchemyUnitOfWork,
        distributed_lock=await _build_distributed_lock(),
    )

    app.state.config_resolver = config_resolver
    app.state.adapter_factory = adapter_factory
    app.state.idempotency_service = idempotency
    app.state.payments_service = PaymentsService(SQLAlchemyUnitOfWork, adapter_factory, idempotency)
    app.state.webhook_router = WebhookRouter(SQLAlchemyUnitOfWork, adapter_factory, config_resolver)
    logger.info(
        "payment_services_initialized",
        environment=payment_settings.default_environment,
        default_provider=payment_settings.default_provider,
    )

    yield

    await adapter_factory.aclose()
    if settings.redis.url:
        await shutdown_redis_cache()
        logger.info("redis_cache_shutdown", message="Redis cache shutdown")
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="多渠道支付编排核心",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. Request ID中间件（最先执行，为后续中间件提供request_id/tenant_id）
app.add_middleware(RequestIDMiddleware)

# 2. 日志中间件（依赖request_id）
app.add_middleware(LoggingMiddleware)

# 3. CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)

# 注册路由
app.include_router(payments_routes.router, prefix="/api/v1")


# 根路径
@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
        message="Payment orchestration core",
    )


# 健康检查
@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message="ok")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
