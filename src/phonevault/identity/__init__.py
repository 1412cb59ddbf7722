"""Phone identities and deterministic address derivation."""

from phonevault.identity.address import AddressDeriver, parse_felt, to_hex
from phonevault.identity.phone import mask_phone, normalize_phone, validate_e164

__all__ = [
    "AddressDeriver",
    "mask_phone",
    "normalize_phone",
    "parse_felt",
    "to_hex",
    "validate_e164",
]
