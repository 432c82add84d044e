"""
Adapter registry for payment gateways.

Provider modules are imported lazily so an unused gateway SDK is never
loaded at startup.
"""
from __future__ import annotations

from application.dtos.provider_config import ResolvedConfig
from application.ports.payment_gateway import PaymentAdapter
from application.services.adapter_factory import AdapterBuilder
from domain.payment.capabilities import PaymentProvider


def _phonepe(config: ResolvedConfig) -> PaymentAdapter:
    from .phonepe import PhonePeAdapter
    return PhonePeAdapter(config)


def _razorpay(config: ResolvedConfig) -> PaymentAdapter:
    from .razorpay import RazorpayAdapter
    return RazorpayAdapter(config)


def _stripe(config: ResolvedConfig) -> PaymentAdapter:
    from .stripe_client import StripeClient
    return StripeClient(config)


def _cashfree(config: ResolvedConfig) -> PaymentAdapter:
    from .cashfree import CashfreeAdapter
    return CashfreeAdapter(config)


def _unsupported(config: ResolvedConfig) -> PaymentAdapter:
    from .unsupported import UnsupportedAdapter
    return UnsupportedAdapter(config)


def build_adapter_registry() -> dict[PaymentProvider, AdapterBuilder]:
    return {
        PaymentProvider.RAZORPAY: _razorpay,
        PaymentProvider.STRIPE: _stripe,
        PaymentProvider.CASHFREE: _cashfree,
        PaymentProvider.PHONEPE: _phonepe,
        PaymentProvider.PAYU: _unsupported,
        PaymentProvider.CCAVENUE: _unsupported,
        PaymentProvider.PAYTM: _unsupported,
        PaymentProvider.BILLDESK: _unsupported,
    }
