"""
Provider configuration DTOs: secrets resolved from the environment and the
merged per (tenant, provider, environment) configuration handed to adapters.
"""
from __future__ import annotations

from typing import Any, Optional
from pydantic import BaseModel, Field


DEFAULT_PHONEPE_HOSTS: dict[str, str] = {
    "uat": "https://api-preprod.phonepe.com/apis/pg-sandbox",
    "prod": "https://api.phonepe.com/apis/hermes",
}


class ProviderSecrets(BaseModel):
    provider: str
    environment: str
    environment_prefix: str

    key_secret: Optional[str] = None
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    salt: Optional[str] = None
    working_key: Optional[str] = None
    checksum_key: Optional[str] = None
    merchant_key: Optional[str] = None

    # OAuth client credentials and webhook basic-auth pair
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    client_version: Optional[str] = None
    webhook_username: Optional[str] = None
    webhook_password: Optional[str] = None

    # Identifier fields that may also be stored as non-secret configuration
    merchant_id: Optional[str] = None
    key_id: Optional[str] = None
    salt_index: Optional[int] = None
    access_code: Optional[str] = None
    app_id: Optional[str] = None
    publishable_key: Optional[str] = None
    account_id: Optional[str] = None
    redirect_url: Optional[str] = None

    host_uat: Optional[str] = None
    host_prod: Optional[str] = None

    def __repr__(self) -> str:
        return f"ProviderSecrets(provider={self.provider!r}, environment={self.environment!r})"

    __str__ = __repr__


class PhonePeHostConfig(BaseModel):
    hosts: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_PHONEPE_HOSTS))
    active_host: Optional[str] = None

    def resolve(self, environment: str) -> str:
        """'uat'/'prod' pick a known host, any other non-empty value is a URL."""
        selection = (self.active_host or "").strip()
        if selection:
            if selection in ("uat", "prod"):
                return self.hosts[selection]
            return selection
        return self.hosts["prod"] if environment == "live" else self.hosts["uat"]


class ResolvedConfig(BaseModel):
    provider: str
    environment: str
    tenant_id: str
    enabled: bool

    merchant_id: Optional[str] = None
    key_id: Optional[str] = None
    access_code: Optional[str] = None
    app_id: Optional[str] = None
    publishable_key: Optional[str] = None
    salt_index: Optional[int] = None
    account_id: Optional[str] = None

    success_url: Optional[str] = None
    failure_url: Optional[str] = None
    webhook_url: Optional[str] = None
    redirect_url: Optional[str] = None

    secrets: Optional[ProviderSecrets] = None
    phonepe: Optional[PhonePeHostConfig] = None

    capabilities: dict[str, bool] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    is_valid: bool = False
    missing_secrets: list[str] = Field(default_factory=list)

    @property
    def cache_key(self) -> str:
        return f"{self.tenant_id}:{self.provider}:{self.environment}"


class ProviderConfigUpdate(BaseModel):
    """Admin upsert payload for the non-secret row. Omitted fields keep stored values."""

    provider: str
    environment: str
    enabled: Optional[bool] = None
    display_name: Optional[str] = None
    merchant_id: Optional[str] = None
    key_id: Optional[str] = None
    access_code: Optional[str] = None
    app_id: Optional[str] = None
    publishable_key: Optional[str] = None
    salt_index: Optional[int] = None
    account_id: Optional[str] = None
    success_url: Optional[str] = None
    failure_url: Optional[str] = None
    webhook_url: Optional[str] = None
    capabilities: Optional[dict[str, bool]] = None
    metadata: Optional[dict[str, Any]] = None
