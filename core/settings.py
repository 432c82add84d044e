"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Provider secrets are NOT configured here: they are read from
``{secrets_prefix}_{ENV}_{PROVIDER}_{FIELD}`` environment variables by the
secrets resolver. This module only carries tunables.
"""
from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 5.0
    read: float = 15.0
    write: float = 15.0
    total: float = 30.0


class PaymentRetry(BaseModel):
    # transport-level retries inside a single adapter call
    max: int = 2
    base_backoff: float = 0.2


class OperationSettings(BaseModel):
    # orchestration-level retries around adapter.create_payment
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 5000


class TokenSettings(BaseModel):
    refresh_window_seconds: int = 240
    default_ttl_seconds: int = 3600


class IdempotencySettings(BaseModel):
    ttl_hours: int = 24
    use_redis_lock: bool = False
    lock_timeout_seconds: float = 60.0
    lock_blocking_timeout_seconds: float = 35.0
    memory_max_entries: int = 10000


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    retention_days: int = 30


class PaymentSettings(BaseSettings):
    default_provider: str = "razorpay"
    default_environment: str = "test"
    default_tenant: str = "default"
    secrets_prefix: str = "PAYAPP"
    base_url: str = "http://localhost:3000"
    service_version: str = "1.0.0"

    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    operation: OperationSettings = Field(default_factory=OperationSettings)
    token: TokenSettings = Field(default_factory=TokenSettings)
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


@lru_cache
def get_payment_settings() -> PaymentSettings:
    return PaymentSettings()


payment_settings = get_payment_settings()
