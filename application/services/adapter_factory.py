"""
Adapter factory: builds one adapter per (tenant, provider, environment) from
the resolved configuration and picks a fallback when the preferred provider
is unavailable.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Mapping, Optional

from application.dtos.payments import ErrorInfo, HealthCheckResult
from application.dtos.provider_config import ResolvedConfig
from application.ports.payment_gateway import PaymentAdapter
from application.services.config_resolver import DEFAULT_TENANT, ConfigResolver
from core.logging_config import get_logger
from domain.payment.capabilities import (
    Environment,
    PaymentMethod,
    PaymentProvider,
    parse_environment,
    parse_provider,
    providers_supporting,
    supports_currency,
)
from domain.payment.exceptions import ConfigurationError, PaymentError


logger = get_logger(__name__)

AdapterBuilder = Callable[[ResolvedConfig], PaymentAdapter]


def _base_method(method: Optional[str]) -> Optional[PaymentMethod]:
    """``upi_collect`` and similar variants filter as their base method; unknown values do not filter."""
    if not method:
        return None
    head = method.strip().lower().split("_", 1)[0]
    try:
        return PaymentMethod(head)
    except ValueError:
        return None


def _adapter_supports(adapter: PaymentAdapter, method: Optional[PaymentMethod], currency: Optional[str]) -> bool:
    if method is not None and method.value not in adapter.get_supported_methods():
        return False
    if currency and currency.upper() not in adapter.get_supported_currencies():
        return False
    return True


class AdapterFactory:
    def __init__(
        self,
        config_resolver: ConfigResolver,
        builders: Optional[Mapping[PaymentProvider, AdapterBuilder]] = None,
        *,
        default_provider: Optional[str] = None,
    ) -> None:
        self._resolver = config_resolver
        self._builders: dict[PaymentProvider, AdapterBuilder] = dict(builders or {})
        self._default_provider = parse_provider(default_provider) if default_provider else PaymentProvider.RAZORPAY
        self._cache: dict[str, PaymentAdapter] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _cache_key(tenant_id: str, provider: PaymentProvider, environment: Environment) -> str:
        return f"{tenant_id}:{provider.value}:{environment.value}"

    def register_adapter(self, provider: str | PaymentProvider, builder: AdapterBuilder) -> None:
        """Register or replace the builder for ``provider``; cached instances stay until cleared."""
        self._builders[parse_provider(provider)] = builder

    async def create_adapter(
        self,
        provider: str | PaymentProvider,
        environment: str | Environment,
        tenant_id: Optional[str] = None,
    ) -> PaymentAdapter:
        """Return the cached adapter or build one from a valid, enabled config.

        Raises ``ConfigurationError`` when the provider has no builder, is
        disabled, or its config fails the adapter's own validation.
        """
        p = parse_provider(provider)
        env = parse_environment(environment)
        tenant = tenant_id or DEFAULT_TENANT
        key = self._cache_key(tenant, p, env)

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

            builder = self._builders.get(p)
            if builder is None:
                raise ConfigurationError(f"No adapter registered for {p.value}", provider=p.value)

            config = await self._resolver.resolve_config(p, env, tenant)
            if not config.enabled:
                raise ConfigurationError(f"Provider {p.value} is disabled for {env.value}", provider=p.value)
            if not config.is_valid:
                raise ConfigurationError(
                    f"Provider {p.value} configuration is invalid",
                    provider=p.value,
                    missing_keys=config.missing_secrets,
                )

            adapter = builder(config)
            validation = adapter.validate_config()
            if not validation.valid:
                await adapter.aclose()
                raise ConfigurationError(
                    f"Invalid {p.value} configuration: {'; '.join(validation.errors)}",
                    provider=p.value,
                )

            self._cache[key] = adapter
            logger.info("payment_adapter_created", provider=p.value, environment=env.value, tenant_id=tenant)
            return adapter

    async def get_adapter_with_fallback(
        self,
        preferred: Optional[str | PaymentProvider],
        environment: str | Environment,
        tenant_id: Optional[str] = None,
        *,
        method: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> PaymentAdapter:
        """Preferred provider first, then enabled fallbacks in preference order.

        With ``method`` or ``currency`` given, fallbacks the registry rules out
        are skipped up front and every built adapter is checked against its
        tenant-adjusted capabilities.
        """
        env = parse_environment(environment)
        wanted_method = _base_method(method)
        candidates: list[PaymentProvider] = []
        if preferred:
            candidates.append(parse_provider(preferred))
        fallbacks = await self._resolver.get_fallback_providers(env, tenant_id, exclude=candidates)
        if wanted_method is not None:
            capable = set(providers_supporting(wanted_method))
            fallbacks = [p for p in fallbacks if p in capable]
        if currency:
            fallbacks = [p for p in fallbacks if supports_currency(p, currency)]
        candidates.extend(fallbacks)

        for provider in candidates:
            try:
                adapter = await self.create_adapter(provider, env, tenant_id)
            except ConfigurationError as exc:
                logger.warning(
                    "payment_adapter_unavailable",
                    provider=provider.value,
                    environment=env.value,
                    tenant_id=tenant_id or DEFAULT_TENANT,
                    error=exc.message,
                )
                continue
            if not _adapter_supports(adapter, wanted_method, currency):
                logger.info(
                    "payment_adapter_unsupported",
                    provider=provider.value,
                    method=wanted_method.value if wanted_method else None,
                    currency=currency,
                )
                continue
            if preferred and provider is not candidates[0]:
                logger.info("payment_provider_fallback", preferred=candidates[0].value, selected=provider.value)
            return adapter

        raise PaymentError(
            f"No payment provider available for {env.value}",
            "NO_AVAILABLE_PROVIDER",
            details={"tried": [p.value for p in candidates]},
        )

    async def get_primary_adapter(
        self, environment: str | Environment, tenant_id: Optional[str] = None
    ) -> PaymentAdapter:
        return await self.get_adapter_with_fallback(self._default_provider, environment, tenant_id)

    async def get_available_adapters(
        self, environment: str | Environment, tenant_id: Optional[str] = None
    ) -> list[PaymentAdapter]:
        adapters: list[PaymentAdapter] = []
        for config in await self._resolver.get_enabled_providers(environment, tenant_id):
            try:
                adapters.append(await self.create_adapter(config.provider, config.environment, tenant_id))
            except ConfigurationError as exc:
                logger.warning("payment_adapter_unavailable", provider=config.provider, error=exc.message)
        return adapters

    async def get_health_status(
        self, environment: str | Environment, tenant_id: Optional[str] = None
    ) -> dict[str, HealthCheckResult]:
        """Health-check every available adapter concurrently; one failure never hides the rest."""
        env = parse_environment(environment)
        adapters = await self.get_available_adapters(env, tenant_id)
        results = await asyncio.gather(*(a.health_check() for a in adapters), return_exceptions=True)

        status: dict[str, HealthCheckResult] = {}
        for adapter, result in zip(adapters, results):
            if isinstance(result, Exception):
                logger.error("payment_health_check_failed", provider=adapter.provider, error=str(result))
                result = HealthCheckResult(
                    provider=adapter.provider,
                    environment=env.value,
                    healthy=False,
                    error=ErrorInfo(code="HEALTH_CHECK_FAILED", message=str(result)),
                )
            elif isinstance(result, BaseException):
                raise result
            status[adapter.provider] = result
        return status

    async def clear_cache(
        self,
        provider: Optional[str | PaymentProvider] = None,
        environment: Optional[str | Environment] = None,
        tenant_id: Optional[str] = None,
    ) -> None:
        """Drop cached adapters (all, or one key) and close their HTTP clients."""
        if provider is None or environment is None:
            evicted = list(self._cache.values())
            self._cache.clear()
        else:
            key = self._cache_key(tenant_id or DEFAULT_TENANT, parse_provider(provider), parse_environment(environment))
            adapter = self._cache.pop(key, None)
            evicted = [adapter] if adapter is not None else []
        for adapter in evicted:
            await adapter.aclose()

    async def aclose(self) -> None:
        await self.clear_cache()
