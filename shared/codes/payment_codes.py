"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004

    # Orchestration errors (61xxx)
    CONFIGURATION_ERROR = 61000
    PROVIDER_UNAVAILABLE = 61001
    PAYMENT_ERROR = 61100
    PAYMENT_NOT_FOUND = 61101
    DUPLICATE_CAPTURE = 61102
    INVALID_STATE = 61103
    CAPTURE_NOT_SUPPORTED = 61104
    REFUND_ERROR = 61200
    REFUND_REJECTED = 61201
    WEBHOOK_ERROR = 61300


# Stable string error codes carried by domain payment errors, mapped to the
# numeric code returned in the response envelope.
ERROR_CODE_TO_PAYMENT_CODE: dict[str, PaymentCode] = {
    "UPI_PAYMENT_ALREADY_CAPTURED": PaymentCode.DUPLICATE_CAPTURE,
    "PAYMENT_NOT_FOUND": PaymentCode.PAYMENT_NOT_FOUND,
    "REFUND_NOT_FOUND": PaymentCode.PAYMENT_NOT_FOUND,
    "ORDER_MISMATCH": PaymentCode.INVALID_STATE,
    "PAYMENT_ALREADY_COMPLETED": PaymentCode.INVALID_STATE,
    "PAYMENT_ALREADY_FAILED": PaymentCode.INVALID_STATE,
    "CAPTURE_NOT_SUPPORTED": PaymentCode.CAPTURE_NOT_SUPPORTED,
    "UNSUPPORTED_PROVIDER": PaymentCode.PROVIDER_UNAVAILABLE,
    "NO_AVAILABLE_PROVIDER": PaymentCode.PROVIDER_UNAVAILABLE,
    "PROVIDER_TIMEOUT": PaymentCode.TIMEOUT,
    "PROVIDER_RATE_LIMITED": PaymentCode.RATE_LIMITED,
    "INVALID_REFUND_AMOUNT": PaymentCode.REFUND_REJECTED,
    "REFUND_EXCEEDS_CAPTURED_AMOUNT": PaymentCode.REFUND_REJECTED,
    "NO_CAPTURED_AMOUNT": PaymentCode.REFUND_REJECTED,
    "MISSING_PROVIDER_PAYMENT_ID": PaymentCode.REFUND_REJECTED,
    "PROVIDER_AUTH_FAILED": PaymentCode.PROVIDER_ERROR,
    "PROVIDER_UNAVAILABLE": PaymentCode.PROVIDER_RECOVERABLE,
    "PROVIDER_REQUEST_FAILED": PaymentCode.PROVIDER_ERROR,
    "PROVIDER_RESOURCE_NOT_FOUND": PaymentCode.PROVIDER_ERROR,
    "TOKEN_FETCH_FAILED": PaymentCode.PROVIDER_ERROR,
    "INVALID_PROVIDER_RESPONSE": PaymentCode.PROVIDER_ERROR,
    "PAYMENT_CREATION_FAILED": PaymentCode.PAYMENT_ERROR,
    "PAYMENT_VERIFICATION_FAILED": PaymentCode.PAYMENT_ERROR,
    "PAYMENT_CAPTURE_FAILED": PaymentCode.PAYMENT_ERROR,
    "PAYMENT_CANCEL_FAILED": PaymentCode.PAYMENT_ERROR,
    "REFUND_CREATION_FAILED": PaymentCode.REFUND_ERROR,
    "REFUND_STATUS_CHECK_FAILED": PaymentCode.REFUND_ERROR,
}

# Failures that are deterministic outcomes of the request itself; an
# idempotent replay must return the same failure instead of re-executing.
DEFINED_FAILURE_CODES = frozenset(
    {
        "UPI_PAYMENT_ALREADY_CAPTURED",
        "REFUND_EXCEEDS_CAPTURED_AMOUNT",
        "INVALID_REFUND_AMOUNT",
        "CAPTURE_NOT_SUPPORTED",
        "ORDER_MISMATCH",
    }
)

# Provider failures worth another attempt inside the operation retry loop.
TRANSIENT_ERROR_CODES = frozenset({"PROVIDER_TIMEOUT", "PROVIDER_UNAVAILABLE", "PROVIDER_RATE_LIMITED"})


# Provider→canonical payment status. Keys are upper-cased, whitespace and
# hyphens folded to "_"; anything missing falls through to the generic aliases.
PROVIDER_STATUS_TO_INTERNAL: dict[str, dict[str, str]] = {
    "razorpay": {
        # order entity
        "ATTEMPTED": "processing",
        "PAID": "captured",
        # payment entity
        "CREATED": "created",
        "AUTHORIZED": "authorized",
        "CAPTURED": "captured",
        "REFUNDED": "refunded",
        "FAILED": "failed",
    },
    "stripe": {
        "REQUIRES_PAYMENT_METHOD": "created",
        "REQUIRES_CONFIRMATION": "created",
        "REQUIRES_ACTION": "initiated",
        "PROCESSING": "processing",
        "REQUIRES_CAPTURE": "authorized",
        "SUCCEEDED": "captured",
        "CANCELED": "cancelled",
    },
    "cashfree": {
        "ACTIVE": "processing",
        "PAYMENT_PENDING": "processing",
        "PENDING": "processing",
        "AUTHORIZED": "authorized",
        "SUCCESS": "captured",
        "COMPLETED": "captured",
        "CAPTURED": "captured",
        "PAID": "captured",
        "FAILED": "failed",
        "USER_DROPPED": "cancelled",
        "CANCELLED": "cancelled",
        "EXPIRED": "cancelled",
        "REFUNDED": "refunded",
    },
    "phonepe": {
        "PENDING": "processing",
        "INITIATED": "processing",
        "IN_PROGRESS": "processing",
        "AWAITING_PAYMENT": "processing",
        "AUTHORIZED": "authorized",
        "AUTHORISED": "authorized",
        "COMPLETED": "captured",
        "CAPTURED": "captured",
        "SUCCESS": "captured",
        "SUCCEEDED": "captured",
        "FAILED": "failed",
        "DECLINED": "failed",
        "REJECTED": "failed",
        "ERROR": "failed",
        "REFUNDED": "refunded",
        "PARTIALLY_REFUNDED": "partially_refunded",
        "CREATED": "created",
    },
}

PROVIDER_REFUND_STATUS_TO_INTERNAL: dict[str, dict[str, str]] = {
    "razorpay": {
        "PENDING": "pending",
        "PROCESSED": "completed",
        "FAILED": "failed",
    },
    "stripe": {
        "PENDING": "pending",
        "REQUIRES_ACTION": "processing",
        "SUCCEEDED": "completed",
        "FAILED": "failed",
        "CANCELED": "cancelled",
    },
    "cashfree": {
        "PENDING": "pending",
        "ONHOLD": "processing",
        "SUCCESS": "completed",
        "FAILED": "failed",
        "CANCELLED": "cancelled",
    },
    "phonepe": {
        "PENDING": "pending",
        "COMPLETED": "completed",
        "SUCCESS": "completed",
        "FAILED": "failed",
    },
}
