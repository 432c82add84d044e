"""
Reconciliation port.

UPI intent/collect payments can stay pending after creation; a separate
poller re-queries them. This core only registers jobs and reads the latest
job for an order. Scheduling and retry policy belong to the implementation.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class ReconciliationScheduler(Protocol):
    async def register_job(
        self,
        *,
        tenant_id: str,
        payment_id: str,
        order_id: str,
        provider: str,
        provider_reference: Optional[str] = None,
        expires_at: Optional[Any] = None,
    ) -> None: ...

    async def get_latest_job_for_order(self, tenant_id: str, order_id: str) -> Optional[dict[str, Any]]: ...
