"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import (
    IdempotencyKeyModel,
    OrderModel,
    PaymentEventModel,
    PaymentModel,
    RefundModel,
)
from .webhook import ProviderConfigModel, WebhookEventModel

__all__ = [
    "Base",
    "metadata",
    "PaymentModel",
    "RefundModel",
    "PaymentEventModel",
    "OrderModel",
    "IdempotencyKeyModel",
    "WebhookEventModel",
    "ProviderConfigModel",
]
