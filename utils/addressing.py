"""Address normalization helpers."""

from __future__ import annotations

import re

from utils.errors import ValidationError

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup."""
    return str(value or "").strip().lower()


def is_evm_address(value: str | None) -> bool:
    return bool(_EVM_ADDRESS_RE.match(normalize_address(value)))


def require_address(value: str | None, *, field: str = "address") -> str:
    address = normalize_address(value)
    if not _EVM_ADDRESS_RE.match(address):
        raise ValidationError(f"invalid {field}: {value!r}", code="VALIDATION_INVALID_ADDRESS")
    return address
