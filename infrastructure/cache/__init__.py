"""缓存层对外暴露的接口"""
from .redis_cache import (
    LockNotAcquiredError,
    RedisCache,
    init_redis_cache,
    shutdown_redis_cache,
)

__all__ = [
    "LockNotAcquiredError",
    "RedisCache",
    "init_redis_cache",
    "shutdown_redis_cache",
]
