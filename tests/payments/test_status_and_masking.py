import pytest

from domain.payment.status import (
    PaymentLifecycleStatus,
    PaymentStatus,
    RefundStatus,
    can_advance_refund,
    can_transition,
    is_captured_status,
    map_gateway_status,
    map_refund_status,
    normalize_lifecycle_status,
    normalize_webhook_status,
    refund_status_for_event,
    to_storage_status,
)
from shared.upi import (
    mask_identifier,
    mask_utr,
    mask_vpa,
    normalize_upi_instrument_variant,
    sanitize_log_identifiers,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("captured", PaymentStatus.CAPTURED),
        (" Success ", PaymentStatus.CAPTURED),
        ("PAYMENT_PENDING", PaymentStatus.PROCESSING),
        ("timed-out", PaymentStatus.CANCELLED),
        ("timedout", PaymentStatus.CANCELLED),
        ("EXPIRED", PaymentStatus.CANCELLED),
        ("CANCELED", PaymentStatus.CANCELLED),
        ("cancelled", PaymentStatus.CANCELLED),
        ("user cancelled", PaymentStatus.CANCELLED),
        ("rejected", PaymentStatus.FAILED),
        ("refunded", PaymentStatus.REFUNDED),
        ("  unknown_state  ", PaymentStatus.PROCESSING),
        ("", PaymentStatus.PROCESSING),
        ("declined", PaymentStatus.FAILED),
        ("something_new", PaymentStatus.PROCESSING),
        (None, PaymentStatus.PROCESSING),
    ],
)
def test_map_gateway_status(raw, expected):
    assert map_gateway_status(raw) is expected


def test_provider_vocabulary_takes_precedence():
    assert map_gateway_status("paid", {"PAID": "authorized"}) is PaymentStatus.AUTHORIZED


def test_map_refund_status_defaults_to_pending():
    assert map_refund_status("processed") is RefundStatus.COMPLETED
    assert map_refund_status("weird") is RefundStatus.PENDING


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, PaymentLifecycleStatus.CREATED),
        ("created", PaymentLifecycleStatus.CREATED),
        ("succeeded", PaymentLifecycleStatus.COMPLETED),
        ("user_cancelled", PaymentLifecycleStatus.FAILED),
        ("refunded", PaymentLifecycleStatus.FAILED),
        ("requires_action", PaymentLifecycleStatus.PENDING),
        ("mystery", PaymentLifecycleStatus.PENDING),
        ("  unknown_state  ", PaymentLifecycleStatus.PENDING),
        ("EXPIRED", PaymentLifecycleStatus.FAILED),
        ("timedout", PaymentLifecycleStatus.FAILED),
        ("CANCELED", PaymentLifecycleStatus.FAILED),
    ],
)
def test_normalize_lifecycle_status(raw, expected):
    assert normalize_lifecycle_status(raw) is expected


LIFECYCLE = PaymentLifecycleStatus
ALLOWED_TRANSITIONS = {
    (LIFECYCLE.CREATED, LIFECYCLE.PENDING),
    (LIFECYCLE.CREATED, LIFECYCLE.COMPLETED),
    (LIFECYCLE.CREATED, LIFECYCLE.FAILED),
    (LIFECYCLE.PENDING, LIFECYCLE.COMPLETED),
    (LIFECYCLE.PENDING, LIFECYCLE.FAILED),
}


@pytest.mark.parametrize("current", list(LIFECYCLE))
@pytest.mark.parametrize("target", list(LIFECYCLE))
def test_lifecycle_transition_table(current, target):
    assert can_transition(current, target) is ((current, target) in ALLOWED_TRANSITIONS)


@pytest.mark.parametrize(
    "current, target",
    [
        ("captured", "processing"),
        ("refunded", "captured"),
        ("cancelled", "created"),
        ("failed", "captured"),
        ("processing", "created"),
    ],
)
def test_raw_statuses_never_move_backwards(current, target):
    assert not can_transition(normalize_lifecycle_status(current), normalize_lifecycle_status(target))


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        ("pending", "processing", True),
        ("pending", "completed", True),
        ("processing", "failed", True),
        ("processing", "pending", False),
        ("completed", "failed", False),
        ("cancelled", "completed", False),
        ("failed", "failed", False),
        (None, "pending", True),
    ],
)
def test_refund_statuses_only_advance(current, target, allowed):
    assert can_advance_refund(current, target) is allowed


@pytest.mark.parametrize(
    "raw, vocabulary, expected",
    [
        ("completed", None, RefundStatus.COMPLETED),
        (PaymentStatus.CAPTURED.value, None, RefundStatus.COMPLETED),
        ("authorized", None, RefundStatus.PROCESSING),
        ("SUCCESS", {"SUCCESS": "completed"}, RefundStatus.COMPLETED),
        ("ONHOLD", {"ONHOLD": "processing"}, RefundStatus.PROCESSING),
        ("mystery", None, RefundStatus.PENDING),
    ],
)
def test_refund_status_for_event(raw, vocabulary, expected):
    assert refund_status_for_event(raw, vocabulary) is expected


def test_storage_status_keeps_cancellation_marker():
    assert to_storage_status("captured") == "COMPLETED"
    assert to_storage_status("failed") == "FAILED"
    assert to_storage_status("cancelled") == "CANCELLED"
    assert to_storage_status("processing") == "PENDING"
    assert is_captured_status("paid")
    assert not is_captured_status("pending")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("COMPLETED", "captured"),
        ("authorized", "authorized"),
        ("initiated", "processing"),
        ("expired", "cancelled"),
        ("partially_refunded", "partially_refunded"),
        ("", None),
        (None, None),
    ],
)
def test_normalize_webhook_status(raw, expected):
    assert normalize_webhook_status(raw) == expected


def test_vpa_masking():
    assert mask_vpa("payer.name@ybl") == "pa********@ybl"
    assert mask_vpa("ab@upi") == "ab***@upi"
    assert mask_vpa("pa***@ybl") == "pa***@ybl"
    assert mask_vpa("   ") is None


def test_utr_masking():
    assert mask_utr("123456789012") == "********9012"
    assert mask_utr("12345") == "****2345"
    assert mask_utr("123") == "***"
    assert mask_utr(None) is None


def test_identifiers_masked_only_for_listed_providers():
    assert mask_identifier("phonepe", "payer@ybl", kind="vpa") == "pa***@ybl"
    assert mask_identifier("razorpay", " payer@ybl ", kind="vpa") == "payer@ybl"
    assert sanitize_log_identifiers("phonepe", upi_utr="123456789012")["upi_utr"] == "********9012"


def test_instrument_variant_normalization():
    assert normalize_upi_instrument_variant("upi_intent") == "UPI_INTENT"
    assert normalize_upi_instrument_variant("dynamic_qr") == "DYNAMIC_QR"
    assert normalize_upi_instrument_variant("card") is None
    assert normalize_upi_instrument_variant(None) is None
