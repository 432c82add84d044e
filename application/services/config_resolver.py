"""
配置解析服务（application/services）- 合并存储中的非敏感配置与环境变量中的密钥

Resolved configs are cached per ``tenant:provider:environment`` until an
explicit ``clear_cache`` (e.g. after an admin update).
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable, Optional

from application.dtos.provider_config import (
    DEFAULT_PHONEPE_HOSTS,
    PhonePeHostConfig,
    ProviderConfigUpdate,
    ProviderSecrets,
    ResolvedConfig,
)
from application.ports.secrets import SecretsSource
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.capabilities import (
    DISPLAY_NAMES,
    Environment,
    FALLBACK_PREFERENCE,
    PaymentProvider,
    ordered_by_preference,
    parse_environment,
    parse_provider,
)
from domain.payment.entity import ProviderConfigRecord
from domain.payment.exceptions import ConfigurationError


logger = get_logger(__name__)

DEFAULT_TENANT = "default"

# Fields that both the storage row and the secrets source can carry.
_DUAL_SOURCE_FIELDS = (
    "merchant_id",
    "key_id",
    "salt_index",
    "access_code",
    "app_id",
    "publishable_key",
    "account_id",
    "redirect_url",
)


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _metadata_value(metadata: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = metadata.get(key)
        if _present(value):
            return value.strip() if isinstance(value, str) else value
    return None


class ConfigResolver:
    """配置解析器 - 显式构造并注入，缓存由实例持有"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        secrets: SecretsSource,
    ) -> None:
        self._uow_factory = uow_factory
        self._secrets = secrets
        self._cache: dict[str, ResolvedConfig] = {}

    @staticmethod
    def _cache_key(tenant_id: str, provider: PaymentProvider, environment: Environment) -> str:
        return f"{tenant_id}:{provider.value}:{environment.value}"

    async def _load_record(
        self, tenant_id: str, provider: PaymentProvider, environment: Environment
    ) -> Optional[ProviderConfigRecord]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.provider_config_repository.get(tenant_id, provider.value, environment.value)

    async def resolve_config(
        self,
        provider: str | PaymentProvider,
        environment: str | Environment,
        tenant_id: Optional[str] = None,
    ) -> ResolvedConfig:
        """Resolve the merged config.

        Disabled providers come back ``enabled=False, is_valid=False`` without
        touching secrets. Enabled providers raise ``ConfigurationError`` when
        any required secret is missing or a field has two sources.
        """
        p = parse_provider(provider)
        env = parse_environment(environment)
        tenant = tenant_id or DEFAULT_TENANT
        key = self._cache_key(tenant, p, env)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        record = await self._load_record(tenant, p, env)
        enabled = bool(record and record.is_enabled)
        metadata = dict(record.metadata or {}) if record else {}

        config = ResolvedConfig(
            provider=p.value,
            environment=env.value,
            tenant_id=tenant,
            enabled=enabled,
            merchant_id=record.merchant_id if record else None,
            key_id=record.key_id if record else None,
            access_code=record.access_code if record else None,
            app_id=record.app_id if record else None,
            publishable_key=record.publishable_key if record else None,
            salt_index=record.salt_index if record else None,
            account_id=record.account_id if record else None,
            success_url=record.success_url if record else None,
            failure_url=record.failure_url if record else None,
            webhook_url=record.webhook_url if record else None,
            redirect_url=_metadata_value(metadata, "redirect_url", "redirectUrl"),
            capabilities=dict(record.capabilities or {}) if record else {},
            metadata=metadata,
        )

        if not enabled:
            self._cache[key] = config
            return config

        missing = self._secrets.missing_secrets(p.value, env.value)
        if missing:
            raise ConfigurationError(
                f"Missing required secrets for {p.value} ({env.value}): {', '.join(missing)}",
                provider=p.value,
                missing_keys=missing,
            )

        secrets = self._secrets.resolve_secrets(p.value, env.value)
        config = self._merge_secrets(config, secrets)
        if p is PaymentProvider.PHONEPE:
            config = self._apply_phonepe(config, secrets)

        config = config.model_copy(update={"is_valid": True, "missing_secrets": []})
        self._cache[key] = config
        logger.debug("provider_config_resolved", provider=p.value, environment=env.value, tenant_id=tenant)
        return config

    @staticmethod
    def _merge_secrets(config: ResolvedConfig, secrets: ProviderSecrets) -> ResolvedConfig:
        conflicts = [
            name
            for name in _DUAL_SOURCE_FIELDS
            if _present(getattr(config, name)) and _present(getattr(secrets, name))
        ]
        if conflicts:
            raise ConfigurationError(
                f"Configuration for {config.provider} is supplied from multiple sources: {', '.join(conflicts)}",
                provider=config.provider,
                conflicting_fields=conflicts,
            )
        updates = {
            name: getattr(secrets, name)
            for name in _DUAL_SOURCE_FIELDS
            if _present(getattr(secrets, name))
        }
        updates["secrets"] = secrets
        return config.model_copy(update=updates)

    @staticmethod
    def _apply_phonepe(config: ResolvedConfig, secrets: ProviderSecrets) -> ResolvedConfig:
        if not _present(config.merchant_id):
            raise ConfigurationError(
                "Missing PhonePe merchantId",
                provider=config.provider,
                missing_keys=[f"{secrets.environment_prefix}MERCHANT_ID"],
            )
        if not _present(config.redirect_url):
            raise ConfigurationError(
                "Missing PhonePe redirectUrl",
                provider=config.provider,
                missing_keys=[f"{secrets.environment_prefix}REDIRECT_URL"],
            )
        hosts = dict(DEFAULT_PHONEPE_HOSTS)
        if secrets.host_uat:
            hosts["uat"] = secrets.host_uat
        if secrets.host_prod:
            hosts["prod"] = secrets.host_prod
        active_host = _metadata_value(config.metadata, "phonepe_host", "phonepeHost", "active_host")
        return config.model_copy(
            update={
                "salt_index": config.salt_index or 1,
                "phonepe": PhonePeHostConfig(hosts=hosts, active_host=active_host),
            }
        )

    async def get_enabled_providers(
        self, environment: str | Environment, tenant_id: Optional[str] = None
    ) -> list[ResolvedConfig]:
        """Resolve every provider concurrently.

        ``ConfigurationError`` excludes that provider; anything else propagates.
        """
        env = parse_environment(environment)
        providers = list(PaymentProvider)
        results = await asyncio.gather(
            *(self.resolve_config(p, env, tenant_id) for p in providers),
            return_exceptions=True,
        )
        enabled: list[ResolvedConfig] = []
        for provider, result in zip(providers, results):
            if isinstance(result, ConfigurationError):
                logger.warning(
                    "provider_config_invalid",
                    provider=provider.value,
                    environment=env.value,
                    tenant_id=tenant_id or DEFAULT_TENANT,
                    error=result.message,
                    missing_keys=result.missing_keys,
                    conflicting_fields=result.conflicting_fields,
                )
                continue
            if isinstance(result, BaseException):
                raise result
            if result.enabled and result.is_valid:
                enabled.append(result)
        return enabled

    async def is_provider_available(
        self, provider: str | PaymentProvider, environment: str | Environment, tenant_id: Optional[str] = None
    ) -> bool:
        try:
            config = await self.resolve_config(provider, environment, tenant_id)
        except ConfigurationError:
            return False
        return config.enabled and config.is_valid

    async def get_fallback_providers(
        self,
        environment: str | Environment,
        tenant_id: Optional[str] = None,
        exclude: Optional[Iterable[str | PaymentProvider]] = None,
    ) -> list[PaymentProvider]:
        excluded = {parse_provider(p) for p in (exclude or [])}
        enabled = await self.get_enabled_providers(environment, tenant_id)
        return ordered_by_preference(
            parse_provider(c.provider) for c in enabled if parse_provider(c.provider) not in excluded
        )

    async def get_provider_status(self, tenant_id: Optional[str] = None) -> list[dict[str, Any]]:
        """每个渠道在 test/live 下的启用与配置状态（管理后台使用）"""
        status: list[dict[str, Any]] = []
        for provider in FALLBACK_PREFERENCE:
            entry: dict[str, Any] = {"provider": provider.value, "display_name": DISPLAY_NAMES[provider]}
            for env in Environment:
                try:
                    config = await self.resolve_config(provider, env, tenant_id)
                    entry[env.value] = {
                        "enabled": config.enabled,
                        "configured": config.is_valid,
                        "missing_secrets": config.missing_secrets,
                    }
                except ConfigurationError as exc:
                    entry[env.value] = {
                        "enabled": True,
                        "configured": False,
                        "missing_secrets": exc.missing_keys,
                        "error": exc.message,
                    }
            status.append(entry)
        return status

    async def update_config(self, update: ProviderConfigUpdate, tenant_id: Optional[str] = None) -> ProviderConfigRecord:
        p = parse_provider(update.provider)
        env = parse_environment(update.environment)
        tenant = tenant_id or DEFAULT_TENANT

        async with self._uow_factory() as uow:
            repo = uow.provider_config_repository
            existing = await repo.get(tenant, p.value, env.value)
            record = existing or ProviderConfigRecord(tenant_id=tenant, provider=p.value, environment=env.value)
            changes = update.model_dump(exclude_unset=True, exclude={"provider", "environment"})
            if "enabled" in changes:
                record.is_enabled = bool(changes.pop("enabled"))
            for name, value in changes.items():
                setattr(record, name, value)
            saved = await repo.upsert(record)

        self.clear_cache(p, env, tenant)
        logger.info("provider_config_updated", provider=p.value, environment=env.value, tenant_id=tenant)
        return saved

    def clear_cache(
        self,
        provider: Optional[str | PaymentProvider] = None,
        environment: Optional[str | Environment] = None,
        tenant_id: Optional[str] = None,
    ) -> None:
        if provider is None or environment is None:
            self._cache.clear()
            self._secrets.clear_cache()
            return
        key = self._cache_key(tenant_id or DEFAULT_TENANT, parse_provider(provider), parse_environment(environment))
        self._cache.pop(key, None)
