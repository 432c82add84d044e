"""Redis 分布式锁（幂等键跨进程互斥）"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis import asyncio as aioredis
from redis.exceptions import LockError

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)


class LockNotAcquiredError(TimeoutError):
    """在 blocking_timeout 内没有拿到分布式锁"""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"获取锁失败: {key}")


class RedisCache:
    """按命名空间隔离的 Redis 客户端封装，目前只提供分布式锁"""

    def __init__(self, client: aioredis.Redis, namespace: str = "") -> None:
        self._client = client
        self._namespace = namespace.strip(":")

    def _format_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    @asynccontextmanager
    async def lock(self, key: str, timeout: float = 60, blocking_timeout: float = 5) -> AsyncIterator[None]:
        """
        分布式锁上下文管理器（SET NX PX + token 校验释放）

        Args:
            key: 锁的键名
            timeout: 锁的自动过期时间（秒）
            blocking_timeout: 获取锁的等待时间（秒）
        """
        lock_key = f"lock:{self._format_key(key)}"
        lock = self._client.lock(lock_key, timeout=timeout, blocking_timeout=blocking_timeout)
        acquired = await lock.acquire()
        if not acquired:
            raise LockNotAcquiredError(lock_key)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as exc:
                # 锁已过期被他人持有，只记录
                logger.warning("redis_lock_release_failed", key=lock_key, error=str(exc))


_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisCache] = None
_lock = asyncio.Lock()


async def init_redis_cache(namespace: Optional[str] = None) -> RedisCache:
    """初始化Redis锁实例"""
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL 未配置，无法初始化Redis")

        client = aioredis.from_url(
            settings.redis.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.max_connections,
        )

        _redis_client = client
        _cache_instance = RedisCache(
            client=client,
            namespace=namespace or settings.redis.namespace,
        )
        return _cache_instance


async def shutdown_redis_cache() -> None:
    """关闭Redis连接"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        _cache_instance = None
