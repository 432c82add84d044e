"""
UPI identifier helpers shared by adapters, services and log sanitisation.

Payer handles (VPA) and bank reference numbers (UTR) are personal data and are
stored/logged only in masked form for providers that expose them raw.
"""
from __future__ import annotations

from typing import Optional

MASK_CHARACTER = "*"

# Providers whose UPI identifiers must be masked before persistence.
MASKED_IDENTIFIER_PROVIDERS = frozenset({"phonepe"})


def _coerce(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def mask_vpa(value: Optional[str]) -> Optional[str]:
    """Mask a UPI virtual payment address, keeping two leading chars and the domain.

    ``"payer.name@ybl"`` -> ``"pa********@ybl"``; already-masked input is returned as is.
    """
    normalized = _coerce(value)
    if normalized is None:
        return None
    if MASK_CHARACTER in normalized:
        return normalized

    local_part, _, domain = normalized.partition("@")
    visible = local_part[:2]
    masked_len = max(len(local_part) - len(visible), 3)
    masked_local = f"{visible}{MASK_CHARACTER * masked_len}"
    return f"{masked_local}@{domain}" if domain else masked_local


def mask_utr(value: Optional[str]) -> Optional[str]:
    """Mask a UTR keeping only the last four characters."""
    normalized = _coerce(value)
    if normalized is None:
        return None
    if MASK_CHARACTER in normalized:
        return normalized
    if len(normalized) <= 4:
        return MASK_CHARACTER * len(normalized)
    suffix = normalized[-4:]
    masked_len = max(len(normalized) - len(suffix), 4)
    return f"{MASK_CHARACTER * masked_len}{suffix}"


def mask_identifier(provider: Optional[str], value: Optional[str], *, kind: str) -> Optional[str]:
    """Mask ``value`` when ``provider`` requires it; ``kind`` is ``"vpa"`` or ``"utr"``."""
    if provider not in MASKED_IDENTIFIER_PROVIDERS:
        return _coerce(value)
    return mask_vpa(value) if kind == "vpa" else mask_utr(value)


def normalize_upi_instrument_variant(variant: Optional[str]) -> Optional[str]:
    normalized = _coerce(variant)
    if normalized is None:
        return None
    normalized = normalized.upper()
    if normalized.startswith("UPI") or "QR" in normalized:
        return normalized
    return None


def sanitize_log_identifiers(
    provider: Optional[str],
    *,
    upi_payer_handle: Optional[str] = None,
    upi_utr: Optional[str] = None,
) -> dict[str, Optional[str]]:
    return {
        "provider": provider,
        "upi_payer_handle": mask_identifier(provider, upi_payer_handle, kind="vpa"),
        "upi_utr": mask_identifier(provider, upi_utr, kind="utr"),
    }


__all__ = [
    "MASK_CHARACTER",
    "mask_vpa",
    "mask_utr",
    "mask_identifier",
    "normalize_upi_instrument_variant",
    "sanitize_log_identifiers",
]
