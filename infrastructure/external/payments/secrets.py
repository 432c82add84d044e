"""
Environment-backed secrets source.

Variables follow ``{PREFIX}_{ENV}_{PROVIDER}_{FIELD}``, e.g.
``PAYAPP_TEST_RAZORPAY_KEY_SECRET``. Secrets are never stored in the database.
"""
from __future__ import annotations

import os
from typing import Mapping, Optional

from application.dtos.provider_config import ProviderSecrets
from core.logging_config import get_logger
from domain.payment.capabilities import PaymentProvider, parse_environment, parse_provider


logger = get_logger(__name__)


# ProviderSecrets field -> env var suffix, per provider
_SECRET_FIELDS: dict[PaymentProvider, dict[str, str]] = {
    PaymentProvider.RAZORPAY: {"key_secret": "KEY_SECRET", "webhook_secret": "WEBHOOK_SECRET"},
    PaymentProvider.PAYU: {"salt": "SALT"},
    PaymentProvider.CCAVENUE: {"working_key": "WORKING_KEY"},
    PaymentProvider.CASHFREE: {"secret_key": "SECRET_KEY", "webhook_secret": "WEBHOOK_SECRET"},
    PaymentProvider.PAYTM: {"merchant_key": "MERCHANT_KEY"},
    PaymentProvider.BILLDESK: {"checksum_key": "CHECKSUM_KEY"},
    PaymentProvider.PHONEPE: {
        "salt": "SALT",
        "webhook_secret": "WEBHOOK_SECRET",
        "client_id": "CLIENT_ID",
        "client_secret": "CLIENT_SECRET",
        "client_version": "CLIENT_VERSION",
        "webhook_username": "WEBHOOK_USERNAME",
        "webhook_password": "WEBHOOK_PASSWORD",
    },
    PaymentProvider.STRIPE: {"secret_key": "SECRET_KEY", "webhook_secret": "WEBHOOK_SECRET"},
}

# Identifier fields any provider may take from the environment instead of storage.
_IDENTIFIER_FIELDS: dict[str, str] = {
    "merchant_id": "MERCHANT_ID",
    "key_id": "KEY_ID",
    "salt_index": "SALT_INDEX",
    "access_code": "ACCESS_CODE",
    "app_id": "APP_ID",
    "publishable_key": "PUBLISHABLE_KEY",
    "account_id": "ACCOUNT_ID",
    "redirect_url": "REDIRECT_URL",
}

_PHONEPE_HOST_FIELDS: dict[str, str] = {"host_uat": "HOST_UAT", "host_prod": "HOST_PROD"}


def required_secret_suffixes(provider: str | PaymentProvider) -> list[str]:
    return list(_SECRET_FIELDS[parse_provider(provider)].values())


class EnvSecretsResolver:
    """Reads provider secrets from a process environment mapping.

    Results are cached per provider/environment until ``clear_cache``.
    """

    def __init__(self, prefix: str = "PAYAPP", environ: Optional[Mapping[str, str]] = None) -> None:
        self._prefix = prefix.upper().rstrip("_")
        self._environ = environ
        self._cache: dict[str, ProviderSecrets] = {}

    @property
    def environ(self) -> Mapping[str, str]:
        return self._environ if self._environ is not None else os.environ

    def env_prefix(self, provider: str, environment: str) -> str:
        return f"{self._prefix}_{environment.upper()}_{provider.upper()}_"

    def _read(self, name: str) -> Optional[str]:
        value = self.environ.get(name)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def resolve_secrets(self, provider: str, environment: str) -> ProviderSecrets:
        p = parse_provider(provider)
        env = parse_environment(environment)
        cache_key = f"{p.value}_{env.value}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        prefix = self.env_prefix(p.value, env.value)
        values: dict[str, object] = {}
        fields = dict(_SECRET_FIELDS[p])
        fields.update(_IDENTIFIER_FIELDS)
        if p is PaymentProvider.PHONEPE:
            fields.update(_PHONEPE_HOST_FIELDS)
        for field_name, suffix in fields.items():
            raw = self._read(f"{prefix}{suffix}")
            if raw is None:
                continue
            if field_name == "salt_index":
                try:
                    values[field_name] = int(raw)
                except ValueError:
                    logger.warning("invalid_salt_index", provider=p.value, environment=env.value)
                    continue
            else:
                values[field_name] = raw

        secrets = ProviderSecrets(
            provider=p.value,
            environment=env.value,
            environment_prefix=prefix,
            **values,
        )
        self._cache[cache_key] = secrets
        return secrets

    def missing_secrets(self, provider: str, environment: str) -> list[str]:
        p = parse_provider(provider)
        env = parse_environment(environment)
        prefix = self.env_prefix(p.value, env.value)
        return [
            f"{prefix}{suffix}"
            for suffix in _SECRET_FIELDS[p].values()
            if self._read(f"{prefix}{suffix}") is None
        ]

    def clear_cache(self) -> None:
        self._cache.clear()
