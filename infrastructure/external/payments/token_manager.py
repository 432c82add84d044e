"""
Single-flight bearer token cache for gateways that authenticate with OAuth
client credentials.

One manager per adapter instance (provider + environment + tenant). At most
one refresh is in flight at any time; callers arriving while it runs await
the same task. Inside the refresh window the cached token is still served
and the refresh happens in the background.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

from core.logging_config import get_logger
from infrastructure.external.payments.exceptions import ProviderHTTPError


logger = get_logger(__name__)

T = TypeVar("T")

_TOKEN_EXPIRED_CODE = re.compile(r"TOKEN.*EXPIRED", re.IGNORECASE)
# epoch values at or above this are milliseconds
_EPOCH_MS_THRESHOLD = 1e12


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float  # epoch seconds

    def __repr__(self) -> str:
        return f"AccessToken(expires_at={self.expires_at!r})"


class TokenState(str, Enum):
    NO_TOKEN = "no_token"
    VALID = "valid"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return float(text) if text else None
        except ValueError:
            return None
    return None


def resolve_expiry(payload: Mapping[str, Any], now: float, default_ttl: float) -> float:
    """Absolute expiry (epoch seconds) from a token response.

    ``expiresAt`` wins (ISO-8601 string, epoch seconds or epoch
    milliseconds), then ``expiresIn`` seconds, then ``default_ttl``.
    """
    raw_at = payload.get("expiresAt", payload.get("expires_at"))
    numeric_at = _as_number(raw_at)
    if numeric_at is not None and numeric_at > 0:
        return numeric_at / 1000.0 if numeric_at >= _EPOCH_MS_THRESHOLD else numeric_at
    if isinstance(raw_at, str) and raw_at.strip():
        try:
            parsed = datetime.fromisoformat(raw_at.strip().replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.timestamp()

    expires_in = _as_number(payload.get("expiresIn", payload.get("expires_in")))
    if expires_in is not None and expires_in > 0:
        return now + expires_in
    return now + default_ttl


def is_token_rejection(exc: BaseException) -> bool:
    """401/403, or a provider code saying the token expired."""
    if not isinstance(exc, ProviderHTTPError):
        return False
    if exc.is_auth_error:
        return True
    return bool(exc.provider_code and _TOKEN_EXPIRED_CODE.search(exc.provider_code))


class BearerTokenManager:
    def __init__(
        self,
        fetch_token: Callable[[], Awaitable[AccessToken]],
        *,
        refresh_window_seconds: float = 240,
        clock: Callable[[], float] = time.time,
        name: str = "token",
    ) -> None:
        self._fetch_token = fetch_token
        self._refresh_window = refresh_window_seconds
        self._clock = clock
        self._name = name
        self._token: Optional[AccessToken] = None
        self._refresh_task: Optional[asyncio.Task[AccessToken]] = None
        self._lock = asyncio.Lock()
        # bumped by invalidate_token so a stale refresh never stores its result
        self._generation = 0

    @property
    def state(self) -> TokenState:
        token = self._token
        if token is None:
            return TokenState.NO_TOKEN
        now = self._clock()
        if now >= token.expires_at:
            return TokenState.EXPIRED
        if now >= token.expires_at - self._refresh_window:
            return TokenState.NEAR_EXPIRY
        return TokenState.VALID

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def get_access_token(self, force_refresh: bool = False) -> str:
        if not force_refresh:
            token = self._token
            state = self.state
            if token is not None and state is TokenState.VALID:
                return token.value
            if token is not None and state is TokenState.NEAR_EXPIRY:
                await self._ensure_refresh_task()
                return token.value

        task = await self._ensure_refresh_task()
        token = await asyncio.shield(task)
        return token.value

    def invalidate_token(self) -> None:
        self._token = None
        self._refresh_task = None
        self._generation += 1
        logger.debug("access_token_invalidated", name=self._name)

    async def call_with_token(
        self,
        fn: Callable[[str], Awaitable[T]],
        *,
        is_token_error: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        """Run ``fn(token)``; on a token rejection refresh once and retry once."""
        check = is_token_error or is_token_rejection
        token = await self.get_access_token()
        try:
            return await fn(token)
        except Exception as exc:
            if not check(exc):
                raise
            logger.info("access_token_rejected", name=self._name)
            self.invalidate_token()
            token = await self.get_access_token(force_refresh=True)
            return await fn(token)

    async def _ensure_refresh_task(self) -> asyncio.Task[AccessToken]:
        async with self._lock:
            task = self._refresh_task
            if task is None or task.done():
                task = asyncio.create_task(self._refresh(self._generation))
                task.add_done_callback(self._on_refresh_done)
                self._refresh_task = task
            return task

    async def _refresh(self, generation: int) -> AccessToken:
        logger.debug("access_token_refresh_started", name=self._name)
        token = await self._fetch_token()
        if generation == self._generation:
            self._token = token
            logger.info("access_token_refreshed", name=self._name, expires_at=token.expires_at)
        return token

    def _on_refresh_done(self, task: asyncio.Task[AccessToken]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("access_token_refresh_failed", name=self._name, error=str(exc))
