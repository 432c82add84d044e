"""
Helpers that pull stable identifiers out of loosely shaped provider payloads.

Verify results and webhook events nest the same facts at different depths
(``data``, ``paymentInstrument``, ``instrumentResponse``); these helpers
search the known locations in a fixed order and apply UPI masking for
providers that expose raw identifiers.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional

from shared.upi import mask_identifier, normalize_upi_instrument_variant


@dataclass
class ProviderMetadata:
    provider_payment_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    provider_reference_id: Optional[str] = None
    upi_payer_handle: Optional[str] = None
    upi_utr: Optional[str] = None
    upi_instrument_variant: Optional[str] = None
    receipt_url: Optional[str] = None


def _as_dict(value: Any) -> Optional[Mapping[str, Any]]:
    return value if isinstance(value, Mapping) else None


def pick_string(sources: Iterable[Mapping[str, Any]], *keys: str) -> Optional[str]:
    """First non-blank string found, scanning keys in order across all sources."""
    sources = list(sources)
    for key in keys:
        for source in sources:
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _nested_sources(payload: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    candidates = [
        payload,
        _as_dict(payload.get("provider_data")),
        _as_dict(payload.get("data")),
        _as_dict(payload.get("paymentInstrument")),
        _as_dict(payload.get("instrumentResponse")),
    ]
    return [c for c in candidates if c is not None]


def extract_provider_metadata(payload: Optional[Mapping[str, Any]], provider: Optional[str]) -> ProviderMetadata:
    metadata = ProviderMetadata()
    if not payload:
        return metadata

    sources = _nested_sources(payload)
    metadata.provider_payment_id = pick_string(sources, "providerPaymentId", "paymentId", "merchantTransactionId")
    metadata.provider_transaction_id = pick_string(
        sources, "providerTransactionId", "transactionId", "pgTransactionId", "gatewayTransactionId"
    )
    metadata.provider_reference_id = pick_string(
        sources, "providerReferenceId", "orderId", "referenceId", "merchantOrderId"
    )
    payer_handle = pick_string(
        sources, "upiPayerHandle", "payerVpa", "payerHandle", "virtualPaymentAddress", "vpa", "payerAddress"
    )
    utr = pick_string(sources, "upiUtr", "utr", "upiTransactionId")
    metadata.upi_payer_handle = mask_identifier(provider, payer_handle, kind="vpa")
    metadata.upi_utr = mask_identifier(provider, utr, kind="utr")
    metadata.receipt_url = pick_string(sources, "receiptUrl", "receipt", "receiptLink", "receiptPath", "receipt_path")

    instrument_response = _as_dict(payload.get("instrumentResponse")) or {}
    payment_instrument = _as_dict(payload.get("paymentInstrument")) or {}
    nested_instrument = _as_dict(instrument_response.get("paymentInstrument")) or {}
    for source in (instrument_response, nested_instrument, payment_instrument):
        for key in ("type", "instrumentType"):
            variant = normalize_upi_instrument_variant(source.get(key))
            if variant:
                metadata.upi_instrument_variant = variant
                return metadata
    return metadata


def extract_failure_details(payload: Optional[Mapping[str, Any]]) -> tuple[Optional[str], Optional[str]]:
    """(failure code, failure message) from a failed payment payload."""
    if not payload:
        return None, None
    sources = [s for s in (payload, _as_dict(payload.get("data"))) if s is not None]
    code = pick_string(sources, "code", "state", "subCode", "error_code")
    message = pick_string(sources, "message", "failureMessage", "reason", "description", "error_description")
    return code, message


def extract_captured_amount(payload: Optional[Mapping[str, Any]]) -> Optional[int]:
    """Captured amount in minor units.

    Integers are taken as minor units; decimal strings such as ``"123.45"`` are
    read as major units and converted.
    """
    if not payload:
        return None
    sources = [s for s in (payload, _as_dict(payload.get("data"))) if s is not None]
    for source in sources:
        for key in ("amount", "amountMinor", "transactionAmount", "capturedAmount", "captureAmount"):
            value = source.get(key)
            if isinstance(value, bool):
                continue
            if isinstance(value, int):
                return value
            if isinstance(value, float):
                return round(value)
            if isinstance(value, str) and value.strip():
                try:
                    parsed = Decimal(value.strip())
                except InvalidOperation:
                    continue
                if "." in value:
                    return int((parsed * 100).to_integral_value())
                return int(parsed)
    return None
