"""Secrets source port: where provider secret material comes from."""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from application.dtos.provider_config import ProviderSecrets


@runtime_checkable
class SecretsSource(Protocol):
    def resolve_secrets(self, provider: str, environment: str) -> ProviderSecrets:
        """Read every known secret field for the provider; absent values stay None."""
        ...

    def missing_secrets(self, provider: str, environment: str) -> list[str]:
        """Full names of required secrets that are absent or blank."""
        ...

    def clear_cache(self) -> None: ...
