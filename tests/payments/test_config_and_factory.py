import pytest

from application.dtos.payments import ConfigValidation
from application.dtos.provider_config import ProviderConfigUpdate
from application.services.adapter_factory import AdapterFactory
from application.services.config_resolver import ConfigResolver
from domain.payment.capabilities import (
    FALLBACK_PREFERENCE,
    PaymentMethod,
    PaymentProvider,
    get_capabilities,
    merge_capabilities,
    parse_provider,
    providers_supporting,
    supports_currency,
)
from domain.payment.exceptions import ConfigurationError, PaymentError
from infrastructure.external.payments import build_adapter_registry
from infrastructure.external.payments.secrets import EnvSecretsResolver


PHONEPE_ENV = {
    "PAYAPP_TEST_PHONEPE_SALT": "salt",
    "PAYAPP_TEST_PHONEPE_WEBHOOK_SECRET": "whsec",
    "PAYAPP_TEST_PHONEPE_CLIENT_ID": "cid",
    "PAYAPP_TEST_PHONEPE_CLIENT_SECRET": "csecret",
    "PAYAPP_TEST_PHONEPE_CLIENT_VERSION": "1",
    "PAYAPP_TEST_PHONEPE_WEBHOOK_USERNAME": "hook",
    "PAYAPP_TEST_PHONEPE_WEBHOOK_PASSWORD": "pass",
}


def _resolver(uow_factory, environ):
    return ConfigResolver(uow_factory, EnvSecretsResolver(environ=environ))


@pytest.mark.asyncio
async def test_disabled_provider_skips_secret_checks(uow_factory):
    config = await _resolver(uow_factory, {}).resolve_config("stripe", "test")

    assert config.enabled is False
    assert config.is_valid is False
    assert config.secrets is None


@pytest.mark.asyncio
async def test_missing_secrets_raise_with_variable_names(uow_factory, enable_provider):
    enable_provider("razorpay", key_id="rzp_key")

    with pytest.raises(ConfigurationError) as exc:
        await _resolver(uow_factory, {"PAYAPP_TEST_RAZORPAY_KEY_SECRET": "s"}).resolve_config("razorpay", "test")

    assert exc.value.missing_keys == ["PAYAPP_TEST_RAZORPAY_WEBHOOK_SECRET"]


@pytest.mark.asyncio
async def test_field_supplied_twice_is_a_conflict(uow_factory, enable_provider, secrets_env):
    enable_provider("razorpay", key_id="rzp_key")
    environ = {**secrets_env, "PAYAPP_TEST_RAZORPAY_KEY_ID": "rzp_other"}

    with pytest.raises(ConfigurationError) as exc:
        await _resolver(uow_factory, environ).resolve_config("razorpay", "test")

    assert exc.value.conflicting_fields == ["key_id"]


@pytest.mark.asyncio
async def test_identifier_may_come_from_environment(uow_factory, enable_provider, secrets_env):
    enable_provider("razorpay")
    environ = {**secrets_env, "PAYAPP_TEST_RAZORPAY_KEY_ID": "rzp_env"}

    config = await _resolver(uow_factory, environ).resolve_config("razorpay", "test")

    assert config.is_valid
    assert config.key_id == "rzp_env"
    assert config.secrets.key_secret == "rzp_secret"


@pytest.mark.asyncio
async def test_phonepe_requires_merchant_and_redirect(uow_factory, enable_provider):
    enable_provider("phonepe", merchant_id="M1")
    resolver = _resolver(uow_factory, PHONEPE_ENV)

    with pytest.raises(ConfigurationError) as exc:
        await resolver.resolve_config("phonepe", "test")
    assert exc.value.missing_keys == ["PAYAPP_TEST_PHONEPE_REDIRECT_URL"]

    enable_provider("phonepe", merchant_id="M1", metadata={"redirectUrl": "https://shop.example/return"})
    resolver.clear_cache()
    config = await resolver.resolve_config("phonepe", "test")

    assert config.redirect_url == "https://shop.example/return"
    assert config.salt_index == 1
    assert config.phonepe.resolve("test").startswith("https://api-preprod.phonepe.com")


@pytest.mark.asyncio
async def test_resolved_config_is_cached_until_cleared(uow_factory, enable_provider, secrets_env, store):
    enable_provider("razorpay", key_id="rzp_key")
    resolver = _resolver(uow_factory, secrets_env)

    first = await resolver.resolve_config("razorpay", "test")
    store.provider_configs.clear()
    assert await resolver.resolve_config("razorpay", "test") is first

    resolver.clear_cache("razorpay", "test")
    assert (await resolver.resolve_config("razorpay", "test")).enabled is False


@pytest.mark.asyncio
async def test_update_config_upserts_and_invalidates(uow_factory, secrets_env, store):
    resolver = _resolver(uow_factory, secrets_env)
    assert not await resolver.is_provider_available("razorpay", "test")

    await resolver.update_config(
        ProviderConfigUpdate(provider="razorpay", environment="test", enabled=True, key_id="rzp_key")
    )

    assert store.provider_configs[("default", "razorpay", "test")].is_enabled
    assert await resolver.is_provider_available("razorpay", "test")


@pytest.mark.asyncio
async def test_fallback_order_follows_preference(uow_factory, enable_provider, secrets_env):
    enable_provider("razorpay", key_id="rzp_key")
    enable_provider("stripe")
    environ = {**secrets_env, "PAYAPP_TEST_STRIPE_SECRET_KEY": "sk", "PAYAPP_TEST_STRIPE_WEBHOOK_SECRET": "wh"}
    resolver = _resolver(uow_factory, environ)

    assert await resolver.get_fallback_providers("test") == [PaymentProvider.RAZORPAY, PaymentProvider.STRIPE]
    assert await resolver.get_fallback_providers("test", exclude=["razorpay"]) == [PaymentProvider.STRIPE]


@pytest.mark.asyncio
async def test_provider_status_lists_every_provider(uow_factory, enable_provider):
    enable_provider("razorpay", key_id="rzp_key")

    status = await _resolver(uow_factory, {}).get_provider_status()

    assert [s["provider"] for s in status] == [p.value for p in FALLBACK_PREFERENCE]
    razorpay = status[0]
    assert razorpay["test"]["configured"] is False
    assert "PAYAPP_TEST_RAZORPAY_KEY_SECRET" in razorpay["test"]["missing_secrets"]
    assert status[1]["test"] == {"enabled": False, "configured": False, "missing_secrets": []}


def test_unknown_provider_name_is_a_configuration_error():
    assert parse_provider(" RazorPay ") is PaymentProvider.RAZORPAY
    with pytest.raises(ConfigurationError):
        parse_provider("paypal")


@pytest.mark.asyncio
async def test_factory_caches_adapter_per_key(config_resolver, enable_provider, make_adapter):
    enable_provider("razorpay", key_id="rzp_key")
    built = []

    def build(config):
        built.append(config)
        return make_adapter()

    factory = AdapterFactory(config_resolver, {PaymentProvider.RAZORPAY: build})
    first = await factory.create_adapter("razorpay", "test")
    assert await factory.create_adapter("razorpay", "test") is first
    assert len(built) == 1

    await factory.clear_cache("razorpay", "test")
    assert first.closed
    assert await factory.create_adapter("razorpay", "test") is not first


@pytest.mark.asyncio
async def test_factory_rejects_disabled_or_unregistered(config_resolver, enable_provider, make_adapter):
    enable_provider("razorpay", key_id="rzp_key")
    factory = AdapterFactory(config_resolver, {PaymentProvider.STRIPE: lambda c: make_adapter("stripe")})

    with pytest.raises(ConfigurationError):
        await factory.create_adapter("razorpay", "test")
    with pytest.raises(ConfigurationError):
        await factory.create_adapter("stripe", "test")


@pytest.mark.asyncio
async def test_factory_rejects_adapter_with_invalid_config(config_resolver, enable_provider, make_adapter):
    enable_provider("razorpay", key_id="rzp_key")
    broken = make_adapter()
    broken.validate_config = lambda: ConfigValidation(valid=False, errors=["Missing Razorpay Key ID"])
    factory = AdapterFactory(config_resolver, {PaymentProvider.RAZORPAY: lambda c: broken})

    with pytest.raises(ConfigurationError) as exc:
        await factory.create_adapter("razorpay", "test")
    assert "Missing Razorpay Key ID" in exc.value.message
    assert broken.closed


@pytest.mark.asyncio
async def test_fallback_skips_unavailable_preferred_provider(config_resolver, enable_provider, make_adapter):
    enable_provider("razorpay", key_id="rzp_key")
    razorpay = make_adapter()
    factory = AdapterFactory(
        config_resolver,
        {PaymentProvider.RAZORPAY: lambda c: razorpay, PaymentProvider.STRIPE: lambda c: make_adapter("stripe")},
    )

    assert await factory.get_adapter_with_fallback("stripe", "test") is razorpay


@pytest.mark.asyncio
async def test_no_available_provider(config_resolver, make_adapter):
    factory = AdapterFactory(config_resolver, {PaymentProvider.RAZORPAY: lambda c: make_adapter()})

    with pytest.raises(PaymentError) as exc:
        await factory.get_adapter_with_fallback("razorpay", "test")
    assert exc.value.error_code == "NO_AVAILABLE_PROVIDER"
    assert exc.value.details["tried"] == ["razorpay"]


@pytest.mark.asyncio
async def test_health_status_reports_adapter_exceptions(config_resolver, enable_provider, make_adapter):
    enable_provider("razorpay", key_id="rzp_key")
    adapter = make_adapter()

    async def explode():
        raise RuntimeError("unreachable")

    adapter.health_check = explode
    factory = AdapterFactory(config_resolver, {PaymentProvider.RAZORPAY: lambda c: adapter})

    status = await factory.get_health_status("test")
    assert status["razorpay"].healthy is False
    assert status["razorpay"].error.code == "HEALTH_CHECK_FAILED"


def test_capability_registry_queries():
    assert supports_currency("stripe", "usd")
    assert not supports_currency(PaymentProvider.PHONEPE, "USD")
    assert PaymentProvider.STRIPE not in providers_supporting("upi")
    assert providers_supporting(PaymentMethod.UPI)[:2] == [PaymentProvider.RAZORPAY, PaymentProvider.CASHFREE]
    with pytest.raises(ConfigurationError):
        get_capabilities("nope")


def test_merge_capabilities_applies_known_overrides_only():
    base = get_capabilities("razorpay")

    merged = merge_capabilities(base, {"upi": False, "supports_wallets": False, "teleport": True})

    assert PaymentMethod.UPI not in merged.supported_methods
    assert PaymentMethod.WALLET not in merged.supported_methods
    assert merged.supports_cards is True
    assert merge_capabilities(base, None) is base


@pytest.mark.asyncio
async def test_fallback_filters_by_method_and_currency(uow_factory, enable_provider, secrets_env, make_adapter):
    enable_provider("razorpay", key_id="rzp_key")
    enable_provider("phonepe", merchant_id="M1", metadata={"redirectUrl": "https://shop.example/return"})
    resolver = _resolver(uow_factory, {**secrets_env, **PHONEPE_ENV})
    razorpay = make_adapter()
    razorpay.get_supported_methods = lambda: ["upi"]
    built = []

    def phonepe_builder(config):
        built.append(config.provider)
        return make_adapter("phonepe")

    factory = AdapterFactory(resolver, {PaymentProvider.RAZORPAY: lambda c: razorpay, PaymentProvider.PHONEPE: phonepe_builder})

    assert await factory.get_adapter_with_fallback(None, "test", method="upi_collect") is razorpay
    with pytest.raises(PaymentError) as exc:
        await factory.get_adapter_with_fallback(None, "test", method="card")
    assert exc.value.details["tried"] == ["razorpay"]
    with pytest.raises(PaymentError) as exc:
        await factory.get_adapter_with_fallback(None, "test", currency="USD")
    assert exc.value.details["tried"] == ["razorpay"]
    assert built == []


@pytest.mark.asyncio
async def test_stored_capability_override_reaches_adapter(config_resolver, enable_provider):
    enable_provider("razorpay", key_id="rzp_key", capabilities={"upi": False})
    factory = AdapterFactory(config_resolver, build_adapter_registry())

    adapter = await factory.create_adapter("razorpay", "test")

    assert adapter.get_supported_methods() == ["card", "netbanking", "wallet"]
    with pytest.raises(PaymentError) as exc:
        await factory.get_adapter_with_fallback("razorpay", "test", method="upi")
    assert exc.value.error_code == "NO_AVAILABLE_PROVIDER"
    await factory.aclose()
