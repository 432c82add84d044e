"""
Idempotency service: at most one execution per (tenant, key, scope).

Concurrent callers with the same key are serialized by an in-process
``asyncio.Lock`` (plus an optional distributed lock); the first completes the
operation and later callers get its stored outcome. Successful results and
deterministic business failures are stored; timeouts and unexpected errors
are not, so a retry re-executes.
"""
from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel

from application.ports.locks import DistributedLock
from application.services.config_resolver import DEFAULT_TENANT
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import IdempotencyRecord
from domain.payment.exceptions import PaymentDomainError, PaymentError, RefundError
from shared.codes.payment_codes import DEFINED_FAILURE_CODES


logger = get_logger(__name__)

T = TypeVar("T")

# expired in-process outcomes are swept at most this often
_SWEEP_INTERVAL = timedelta(seconds=60)

_ERROR_TYPES: dict[str, type[PaymentDomainError]] = {
    "PaymentError": PaymentError,
    "RefundError": RefundError,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Outcome:
    result: Any = None
    error: Optional[PaymentDomainError] = None
    expires_at: Optional[datetime] = None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.result


@dataclass
class _KeyLock:
    lock: asyncio.Lock
    holders: int = 0


def _serialize_outcome(outcome: _Outcome) -> dict[str, Any]:
    if outcome.error is not None:
        exc = outcome.error
        return {
            "kind": "error",
            "error_class": exc.type_name,
            "error_code": exc.error_code,
            "message": exc.message,
            "provider": exc.provider,
        }
    result = outcome.result
    if isinstance(result, BaseModel):
        return {"kind": "result", "data": result.model_dump(mode="json")}
    return {"kind": "result", "data": result}


def _deserialize_outcome(payload: dict[str, Any], result_type: Optional[type[BaseModel]]) -> _Outcome:
    if payload.get("kind") == "error":
        error_cls = _ERROR_TYPES.get(payload.get("error_class") or "", PaymentError)
        return _Outcome(
            error=error_cls(payload.get("message") or "", payload.get("error_code") or "", payload.get("provider"))
        )
    data = payload.get("data")
    if result_type is not None and isinstance(data, dict):
        return _Outcome(result=result_type.model_validate(data))
    return _Outcome(result=data)


class IdempotencyService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        distributed_lock: Optional[DistributedLock] = None,
        ttl_hours: Optional[int] = None,
        max_memory_entries: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._distributed_lock = distributed_lock
        self._ttl = timedelta(hours=ttl_hours or payment_settings.idempotency.ttl_hours)
        self._clock = clock
        self._locks: dict[str, _KeyLock] = {}
        self._memory: OrderedDict[str, _Outcome] = OrderedDict()
        self._max_memory_entries = max_memory_entries or payment_settings.idempotency.memory_max_entries
        self._next_sweep = clock() + _SWEEP_INTERVAL

    @staticmethod
    def _cache_key(tenant_id: str, key: str, scope: str) -> str:
        return f"{tenant_id}:{scope}:{key}"

    @asynccontextmanager
    async def _key_lock(self, cache_key: str) -> AsyncIterator[None]:
        entry = self._locks.get(cache_key)
        if entry is None:
            entry = self._locks[cache_key] = _KeyLock(lock=asyncio.Lock())
        entry.holders += 1
        try:
            async with entry.lock:
                lock_cm = (
                    self._distributed_lock.lock(
                        f"idempotency:{cache_key}",
                        timeout=payment_settings.idempotency.lock_timeout_seconds,
                        blocking_timeout=payment_settings.idempotency.lock_blocking_timeout_seconds,
                    )
                    if self._distributed_lock is not None
                    else nullcontext()
                )
                async with lock_cm:
                    yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(cache_key, None)

    async def execute_with_idempotency(
        self,
        key: str,
        scope: str,
        operation: Callable[[], Awaitable[T]],
        tenant_id: Optional[str] = None,
        *,
        result_type: Optional[type[BaseModel]] = None,
    ) -> T:
        """Run ``operation`` once for (tenant, key, scope).

        A stored success is returned without calling ``operation``; a stored
        defined failure is raised again. ``result_type`` rehydrates results
        loaded from storage after a restart.
        """
        tenant = tenant_id or DEFAULT_TENANT
        cache_key = self._cache_key(tenant, key, scope)

        async with self._key_lock(cache_key):
            stored = await self._lookup(cache_key, tenant, key, scope, result_type)
            if stored is not None:
                logger.info("idempotency_hit", scope=scope, tenant_id=tenant, replayed_error=stored.error is not None)
                return stored.unwrap()

            try:
                result = await operation()
            except PaymentDomainError as exc:
                if exc.error_code in DEFINED_FAILURE_CODES:
                    await self._remember(cache_key, tenant, key, scope, _Outcome(error=exc))
                    logger.info("idempotency_failure_stored", scope=scope, error_code=exc.error_code)
                raise

            await self._remember(cache_key, tenant, key, scope, _Outcome(result=result))
            return result

    async def _lookup(
        self,
        cache_key: str,
        tenant_id: str,
        key: str,
        scope: str,
        result_type: Optional[type[BaseModel]],
    ) -> Optional[_Outcome]:
        now = self._clock()
        cached = self._memory.get(cache_key)
        if cached is not None:
            if cached.expires_at is None or cached.expires_at > now:
                return cached
            self._memory.pop(cache_key, None)

        record = await self.check_key(key, scope, tenant_id)
        if record is None:
            return None
        outcome = _deserialize_outcome(record.response, result_type)
        outcome.expires_at = record.expires_at
        self._cache(cache_key, outcome)
        return outcome

    def _cache(self, cache_key: str, outcome: _Outcome) -> None:
        """Keep an outcome in process memory, bounded by expiry and entry count.

        Storage stays the record of truth; an evicted key is reloaded from it.
        """
        now = self._clock()
        if now >= self._next_sweep:
            self._evict_expired(now)
            self._next_sweep = now + _SWEEP_INTERVAL
        self._memory[cache_key] = outcome
        self._memory.move_to_end(cache_key)
        while len(self._memory) > self._max_memory_entries:
            self._memory.popitem(last=False)

    def _evict_expired(self, cutoff: datetime) -> None:
        for cache_key, outcome in list(self._memory.items()):
            if outcome.expires_at is not None and outcome.expires_at <= cutoff:
                del self._memory[cache_key]

    async def _remember(self, cache_key: str, tenant_id: str, key: str, scope: str, outcome: _Outcome) -> None:
        outcome.expires_at = self._clock() + self._ttl
        self._cache(cache_key, outcome)
        await self.store_response(key, scope, _serialize_outcome(outcome), tenant_id, expires_at=outcome.expires_at)

    async def check_key(self, key: str, scope: str, tenant_id: Optional[str] = None) -> Optional[IdempotencyRecord]:
        """Stored, unexpired record for the key or None."""
        async with self._uow_factory(readonly=True) as uow:
            record = await uow.idempotency_repository.get(tenant_id or DEFAULT_TENANT, key, scope)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    async def store_response(
        self,
        key: str,
        scope: str,
        response: dict[str, Any],
        tenant_id: Optional[str] = None,
        *,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """Insert the record; a concurrent duplicate insert is ignored and reported as False."""
        record = IdempotencyRecord(
            key=key,
            scope=scope,
            tenant_id=tenant_id or DEFAULT_TENANT,
            response=response,
            expires_at=expires_at or self._clock() + self._ttl,
            created_at=self._clock(),
        )
        async with self._uow_factory() as uow:
            created = await uow.idempotency_repository.create(record)
        if not created:
            logger.info("idempotency_store_duplicate", scope=scope, tenant_id=record.tenant_id)
        return created

    @staticmethod
    def generate_key(scope: str) -> str:
        return f"{scope}_{uuid.uuid4().hex}"

    async def invalidate_key(self, key: str, scope: str, tenant_id: Optional[str] = None) -> bool:
        tenant = tenant_id or DEFAULT_TENANT
        self._memory.pop(self._cache_key(tenant, key, scope), None)
        async with self._uow_factory() as uow:
            return await uow.idempotency_repository.delete(tenant, key, scope)

    async def cleanup_expired(self, days: int = 0) -> int:
        """Delete records that expired at least ``days`` days ago."""
        cutoff = self._clock() - timedelta(days=days)
        self._evict_expired(cutoff)
        async with self._uow_factory() as uow:
            deleted = await uow.idempotency_repository.delete_expired(cutoff)
        logger.info("idempotency_keys_cleaned", deleted=deleted)
        return deleted

    async def get_stats(self, tenant_id: Optional[str] = None) -> dict[str, Any]:
        """total_keys, keys_by_scope, oldest and newest creation times."""
        async with self._uow_factory(readonly=True) as uow:
            return await uow.idempotency_repository.get_stats(tenant_id)
