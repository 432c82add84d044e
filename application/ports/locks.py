"""Cross-process lock port used to serialize idempotent operations."""
from __future__ import annotations

from typing import AsyncContextManager, Protocol, runtime_checkable


@runtime_checkable
class DistributedLock(Protocol):
    def lock(self, key: str, timeout: float = 60, blocking_timeout: float = 5) -> AsyncContextManager[None]:
        """Hold ``key`` exclusively; raise ``TimeoutError`` when not acquired in time."""
        ...
