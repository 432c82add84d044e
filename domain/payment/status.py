"""
Canonical payment/refund statuses and the payment lifecycle state machine.

Adapters translate provider vocabularies into ``PaymentStatus``; the payments
row stores the coarser ``PaymentLifecycleStatus`` whose transitions are
monotonic: once COMPLETED or FAILED, nothing moves it again.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Mapping, Optional


class PaymentStatus(str, Enum):
    CREATED = "created"
    INITIATED = "initiated"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentLifecycleStatus(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_LIFECYCLE_STATES = frozenset({PaymentLifecycleStatus.COMPLETED, PaymentLifecycleStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[PaymentLifecycleStatus, frozenset[PaymentLifecycleStatus]] = {
    PaymentLifecycleStatus.CREATED: frozenset(
        {PaymentLifecycleStatus.PENDING, PaymentLifecycleStatus.COMPLETED, PaymentLifecycleStatus.FAILED}
    ),
    PaymentLifecycleStatus.PENDING: frozenset({PaymentLifecycleStatus.COMPLETED, PaymentLifecycleStatus.FAILED}),
    PaymentLifecycleStatus.COMPLETED: frozenset(),
    PaymentLifecycleStatus.FAILED: frozenset(),
}

# Provider-agnostic aliases applied after any provider vocabulary.
_GENERIC_STATUS_ALIASES: dict[str, PaymentStatus] = {
    "CREATED": PaymentStatus.CREATED,
    "INITIATED": PaymentStatus.INITIATED,
    "PENDING": PaymentStatus.PROCESSING,
    "PROCESSING": PaymentStatus.PROCESSING,
    "IN_PROGRESS": PaymentStatus.PROCESSING,
    "AUTHORIZED": PaymentStatus.AUTHORIZED,
    "AUTHORISED": PaymentStatus.AUTHORIZED,
    "CAPTURED": PaymentStatus.CAPTURED,
    "COMPLETED": PaymentStatus.CAPTURED,
    "SUCCESS": PaymentStatus.CAPTURED,
    "SUCCEEDED": PaymentStatus.CAPTURED,
    "PAID": PaymentStatus.CAPTURED,
    "FAILED": PaymentStatus.FAILED,
    "FAILURE": PaymentStatus.FAILED,
    "DECLINED": PaymentStatus.FAILED,
    "REJECTED": PaymentStatus.FAILED,
    "DENIED": PaymentStatus.FAILED,
    "ERROR": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.CANCELLED,
    "CANCELED": PaymentStatus.CANCELLED,
    "TIMEOUT": PaymentStatus.CANCELLED,
    "TIMED_OUT": PaymentStatus.CANCELLED,
    "TIMEDOUT": PaymentStatus.CANCELLED,
    "EXPIRED": PaymentStatus.CANCELLED,
    "ABORTED": PaymentStatus.CANCELLED,
    "USER_CANCELLED": PaymentStatus.CANCELLED,
    "USER_CANCELED": PaymentStatus.CANCELLED,
    "REFUNDED": PaymentStatus.REFUNDED,
    "PARTIALLY_REFUNDED": PaymentStatus.PARTIALLY_REFUNDED,
}

_GENERIC_REFUND_ALIASES: dict[str, RefundStatus] = {
    "PENDING": RefundStatus.PENDING,
    "PROCESSING": RefundStatus.PROCESSING,
    "IN_PROGRESS": RefundStatus.PROCESSING,
    "COMPLETED": RefundStatus.COMPLETED,
    "SUCCESS": RefundStatus.COMPLETED,
    "SUCCEEDED": RefundStatus.COMPLETED,
    "PROCESSED": RefundStatus.COMPLETED,
    "FAILED": RefundStatus.FAILED,
    "CANCELLED": RefundStatus.CANCELLED,
    "CANCELED": RefundStatus.CANCELLED,
}

_COMPLETED_ALIASES = frozenset({"COMPLETED", "CAPTURED", "SUCCESS", "SUCCEEDED", "PAID", "SETTLED"})
_FAILED_ALIASES = frozenset(
    {
        "FAILED", "FAILURE", "CANCELLED", "CANCELED", "TIMEOUT", "TIMED_OUT", "TIMEDOUT",
        "EXPIRED", "DECLINED", "DENIED", "ERROR", "REFUNDED", "PARTIALLY_REFUNDED",
        "ABORTED", "USER_CANCELLED",
    }
)
_PENDING_ALIASES = frozenset(
    {"PENDING", "PROCESSING", "INITIATED", "REQUIRES_ACTION", "AUTHORIZED", "AUTH_SUCCESS", "IN_PROGRESS"}
)

# Stored values accepted as "money already captured" by the duplicate-capture guard.
CAPTURED_STORAGE_VALUES = ("captured", "completed", "COMPLETED", "succeeded", "success", "paid")

_SEPARATORS = re.compile(r"[\s\-]+")


def _status_key(raw: object) -> str:
    if raw is None:
        return ""
    return _SEPARATORS.sub("_", str(raw).strip()).upper()


def map_gateway_status(raw: object, vocabulary: Optional[Mapping[str, str]] = None) -> PaymentStatus:
    """Map a provider status into the canonical enum.

    Lookup is case-insensitive and whitespace tolerant. Unknown input maps to
    ``processing`` so ambiguous data never lands on a terminal state.
    """
    key = _status_key(raw)
    if not key:
        return PaymentStatus.PROCESSING
    if vocabulary and key in vocabulary:
        return PaymentStatus(vocabulary[key])
    return _GENERIC_STATUS_ALIASES.get(key, PaymentStatus.PROCESSING)


def map_refund_status(raw: object, vocabulary: Optional[Mapping[str, str]] = None) -> RefundStatus:
    key = _status_key(raw)
    if vocabulary and key in vocabulary:
        return RefundStatus(vocabulary[key])
    return _GENERIC_REFUND_ALIASES.get(key, RefundStatus.PENDING)


def normalize_webhook_status(raw: object) -> Optional[str]:
    """Normalize a status string carried by a verified webhook event.

    Returns a canonical payment status value where one applies, a refund
    status value for refund-only vocabulary, and the lowercased input otherwise.
    """
    if raw is None:
        return None
    value = str(raw).strip().lower()
    if not value:
        return None
    if value in {"completed", "captured", "success", "succeeded"}:
        return PaymentStatus.CAPTURED.value
    if value == "authorized":
        return PaymentStatus.AUTHORIZED.value
    if value in {"pending", "initiated", "processing"}:
        return PaymentStatus.PROCESSING.value
    if value in {"failed", "failure"}:
        return PaymentStatus.FAILED.value
    if value in {"timeout", "timed_out", "timedout", "expired", "cancelled", "canceled"}:
        return PaymentStatus.CANCELLED.value
    # refunded / partially_refunded / created and refund vocabulary pass through
    return value


def is_payment_status(value: Optional[str]) -> bool:
    return value in PaymentStatus._value2member_map_


def is_refund_status(value: Optional[str]) -> bool:
    return value in RefundStatus._value2member_map_


# Payment-vocabulary values that a refund event may carry.
_PAYMENT_TO_REFUND_STATUS: dict[str, RefundStatus] = {
    PaymentStatus.CREATED.value: RefundStatus.PENDING,
    PaymentStatus.INITIATED.value: RefundStatus.PENDING,
    PaymentStatus.AUTHORIZED.value: RefundStatus.PROCESSING,
    PaymentStatus.CAPTURED.value: RefundStatus.COMPLETED,
    PaymentStatus.REFUNDED.value: RefundStatus.COMPLETED,
}


_REFUND_STATUS_RANK: dict[str, int] = {
    RefundStatus.PENDING.value: 0,
    RefundStatus.PROCESSING.value: 1,
    RefundStatus.COMPLETED.value: 2,
    RefundStatus.FAILED.value: 2,
    RefundStatus.CANCELLED.value: 2,
}


def can_advance_refund(current: Optional[str], target: str) -> bool:
    """Refund statuses only move forward; terminal statuses never change."""
    if current == target:
        return False
    current_rank = _REFUND_STATUS_RANK.get(current or "", -1)
    if current_rank >= 2:
        return False
    return _REFUND_STATUS_RANK.get(target, -1) > current_rank


def refund_status_for_event(raw: object, vocabulary: Optional[Mapping[str, str]] = None) -> RefundStatus:
    """Resolve the refund status reported by a webhook event.

    Canonical refund values pass through, canonical payment values are
    translated, and anything else goes through the provider refund vocabulary.
    """
    value = str(raw).strip().lower() if raw is not None else ""
    if is_refund_status(value):
        return RefundStatus(value)
    if value in _PAYMENT_TO_REFUND_STATUS:
        return _PAYMENT_TO_REFUND_STATUS[value]
    return map_refund_status(raw, vocabulary)


def normalize_lifecycle_status(value: object) -> PaymentLifecycleStatus:
    key = _status_key(value)
    if not key or key == "CREATED":
        return PaymentLifecycleStatus.CREATED
    if key in _COMPLETED_ALIASES:
        return PaymentLifecycleStatus.COMPLETED
    if key in _FAILED_ALIASES:
        return PaymentLifecycleStatus.FAILED
    if key in _PENDING_ALIASES:
        return PaymentLifecycleStatus.PENDING
    return PaymentLifecycleStatus.PENDING


def can_transition(current: PaymentLifecycleStatus, target: PaymentLifecycleStatus) -> bool:
    """Same-state and any move out of a terminal state are rejected."""
    if current == target:
        return False
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


def to_storage_status(status: object) -> str:
    """Value persisted in ``payments.status``.

    Cancellation aliases keep their own marker (``CANCELLED``) while still
    normalizing to FAILED for lifecycle checks.
    """
    key = _status_key(status)
    lifecycle = normalize_lifecycle_status(key)
    if lifecycle is PaymentLifecycleStatus.FAILED and key in {"CANCELLED", "CANCELED", "USER_CANCELLED", "ABORTED"}:
        return "CANCELLED"
    return lifecycle.value


def is_captured_status(value: object) -> bool:
    return _status_key(value) in _COMPLETED_ALIASES
