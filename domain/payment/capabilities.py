"""
Provider identities and their static capability metadata.
"""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Iterable, Mapping, Optional

from domain.payment.exceptions import ConfigurationError


class PaymentProvider(str, Enum):
    RAZORPAY = "razorpay"
    PAYU = "payu"
    CCAVENUE = "ccavenue"
    CASHFREE = "cashfree"
    PAYTM = "paytm"
    BILLDESK = "billdesk"
    PHONEPE = "phonepe"
    STRIPE = "stripe"


class Environment(str, Enum):
    TEST = "test"
    LIVE = "live"


class PaymentMethod(str, Enum):
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    EMI = "emi"
    PAYLATER = "paylater"
    QR = "qr"


@dataclass(frozen=True)
class CapabilitySet:
    supports_cards: bool = False
    supports_upi: bool = False
    supports_netbanking: bool = False
    supports_wallets: bool = False
    supports_refunds: bool = False
    supports_payouts: bool = False
    supports_tokenization: bool = False
    supports_international: bool = False
    supports_webhooks: bool = False
    supported_currencies: tuple[str, ...] = ("INR",)

    @property
    def supported_methods(self) -> tuple[PaymentMethod, ...]:
        methods = []
        if self.supports_cards:
            methods.append(PaymentMethod.CARD)
        if self.supports_upi:
            methods.append(PaymentMethod.UPI)
        if self.supports_netbanking:
            methods.append(PaymentMethod.NETBANKING)
        if self.supports_wallets:
            methods.append(PaymentMethod.WALLET)
        return tuple(methods)

    def as_dict(self) -> dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name.startswith("supports_")}


_CAPABILITIES: dict[PaymentProvider, CapabilitySet] = {
    PaymentProvider.RAZORPAY: CapabilitySet(
        supports_cards=True, supports_upi=True, supports_netbanking=True, supports_wallets=True,
        supports_refunds=True, supports_payouts=True, supports_tokenization=True,
        supports_international=True, supports_webhooks=True,
        supported_currencies=("INR", "USD", "EUR", "GBP"),
    ),
    PaymentProvider.PAYU: CapabilitySet(
        supports_cards=True, supports_upi=True, supports_netbanking=True, supports_wallets=True,
        supports_refunds=True, supports_tokenization=True, supports_webhooks=True,
    ),
    PaymentProvider.CCAVENUE: CapabilitySet(
        supports_cards=True, supports_upi=True, supports_netbanking=True, supports_wallets=True,
        supports_refunds=True, supports_tokenization=True, supports_international=True,
        supports_webhooks=True,
        supported_currencies=("INR", "USD", "EUR", "GBP"),
    ),
    PaymentProvider.CASHFREE: CapabilitySet(
        supports_cards=True, supports_upi=True, supports_netbanking=True, supports_wallets=True,
        supports_refunds=True, supports_payouts=True, supports_tokenization=True,
        supports_webhooks=True,
    ),
    PaymentProvider.PAYTM: CapabilitySet(
        supports_cards=True, supports_upi=True, supports_netbanking=True, supports_wallets=True,
        supports_refunds=True, supports_payouts=True, supports_webhooks=True,
    ),
    PaymentProvider.BILLDESK: CapabilitySet(
        supports_cards=True, supports_upi=True, supports_netbanking=True,
        supports_refunds=True, supports_webhooks=True,
    ),
    PaymentProvider.PHONEPE: CapabilitySet(
        supports_upi=True, supports_refunds=True, supports_webhooks=True,
    ),
    PaymentProvider.STRIPE: CapabilitySet(
        supports_cards=True, supports_wallets=True, supports_refunds=True, supports_payouts=True,
        supports_tokenization=True, supports_international=True, supports_webhooks=True,
        supported_currencies=("INR", "USD", "EUR", "GBP"),
    ),
}

# Order in which enabled providers are tried when the preferred one is unavailable.
FALLBACK_PREFERENCE: tuple[PaymentProvider, ...] = (
    PaymentProvider.RAZORPAY,
    PaymentProvider.STRIPE,
    PaymentProvider.CASHFREE,
    PaymentProvider.PAYU,
    PaymentProvider.CCAVENUE,
    PaymentProvider.PAYTM,
    PaymentProvider.PHONEPE,
    PaymentProvider.BILLDESK,
)

DISPLAY_NAMES: dict[PaymentProvider, str] = {
    PaymentProvider.RAZORPAY: "Razorpay",
    PaymentProvider.PAYU: "PayU",
    PaymentProvider.CCAVENUE: "CCAvenue",
    PaymentProvider.CASHFREE: "Cashfree",
    PaymentProvider.PAYTM: "Paytm",
    PaymentProvider.BILLDESK: "BillDesk",
    PaymentProvider.PHONEPE: "PhonePe",
    PaymentProvider.STRIPE: "Stripe",
}


def parse_provider(value: str | PaymentProvider) -> PaymentProvider:
    if isinstance(value, PaymentProvider):
        return value
    try:
        return PaymentProvider((value or "").strip().lower())
    except ValueError:
        raise ConfigurationError(f"Unknown payment provider: {value}", provider=str(value)) from None


def parse_environment(value: str | Environment) -> Environment:
    if isinstance(value, Environment):
        return value
    try:
        return Environment((value or "").strip().lower())
    except ValueError:
        raise ConfigurationError(f"Unknown payment environment: {value}") from None


def get_capabilities(provider: str | PaymentProvider) -> CapabilitySet:
    return _CAPABILITIES[parse_provider(provider)]


def get_supported_methods(provider: str | PaymentProvider) -> tuple[PaymentMethod, ...]:
    return get_capabilities(provider).supported_methods


def get_supported_currencies(provider: str | PaymentProvider) -> tuple[str, ...]:
    return get_capabilities(provider).supported_currencies


def supports_currency(provider: str | PaymentProvider, currency: str) -> bool:
    return (currency or "").upper() in get_supported_currencies(provider)


def providers_supporting(method: str | PaymentMethod) -> list[PaymentProvider]:
    wanted = PaymentMethod(method)
    return [p for p in FALLBACK_PREFERENCE if wanted in _CAPABILITIES[p].supported_methods]


def merge_capabilities(base: CapabilitySet, overrides: Optional[Mapping[str, bool]]) -> CapabilitySet:
    """Apply per-tenant boolean overrides; keys may omit the ``supports_`` prefix."""
    if not overrides:
        return base
    known = {f.name for f in fields(base) if f.name.startswith("supports_")}
    changes = {}
    for key, value in overrides.items():
        name = key if key.startswith("supports_") else f"supports_{key}"
        if name in known:
            changes[name] = bool(value)
    return replace(base, **changes)


def ordered_by_preference(providers: Iterable[PaymentProvider]) -> list[PaymentProvider]:
    wanted = set(providers)
    return [p for p in FALLBACK_PREFERENCE if p in wanted]
