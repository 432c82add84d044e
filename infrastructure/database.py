"""
支付存储的异步引擎与会话工厂

payments / refunds / webhook_events / idempotency_keys / provider_configs 共用同一个引擎。
"""
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from core.config import settings
from infrastructure.models import Base

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def to_async_url(database_url: str) -> str:
    """把同步驱动的 URL 改写为对应的异步驱动；已指定驱动的原样返回"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    try:
        return str(url.set(drivername=_ASYNC_DRIVERS[url.drivername]))
    except KeyError:
        raise ValueError(
            f"数据库驱动 {url.drivername} 没有可用的异步实现，请在 DATABASE__URL 中显式指定"
        ) from None


engine = create_async_engine(
    to_async_url(settings.database.url),
    echo=settings.database.echo,
    pool_pre_ping=not settings.database.url.startswith("sqlite"),
)

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_tables() -> None:
    """按模型元数据建表（开发与测试环境使用）"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
