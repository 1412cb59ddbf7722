"""Deterministic account addresses from phone numbers.

Derivation:
1. Validate the phone string (E.164).
2. Pack its ASCII bytes into a felt (Cairo short string, max 31 bytes).
3. salt = starknet_keccak(big-endian bytes of the packed felt).
4. address = Starknet contract address of the blank account class deployed
   by the vault factory with that salt and empty constructor calldata.

The same phone string always yields the same address. Distinct phone strings
yield distinct salts only as far as Keccak-256 (truncated to 250 bits) and the
Pedersen-based address hash are collision resistant; this is a security
assumption, not a guarantee.
"""

from typing import Optional, Sequence

from Crypto.Hash import keccak
from starknet_py.hash.address import compute_address

from phonevault.errors import PhoneNumberTooLong
from phonevault.identity.phone import validate_e164

# Felts are < 2**251, so a short string holds at most 31 bytes
SHORT_STRING_MAX_BYTES = 31

MASK_250 = 2**250 - 1


def encode_short_string(text: str) -> int:
    """Pack an ASCII string into a single felt."""
    data = text.encode("ascii")
    if len(data) > SHORT_STRING_MAX_BYTES:
        raise PhoneNumberTooLong(
            f"{len(data)} bytes exceeds the {SHORT_STRING_MAX_BYTES}-byte felt capacity"
        )
    return int.from_bytes(data, "big")


def starknet_keccak(data: bytes) -> int:
    """Keccak-256 truncated to 250 bits."""
    k = keccak.new(digest_bits=256)
    k.update(data)
    return int.from_bytes(k.digest(), "big") & MASK_250


def felt_to_bytes(value: int) -> bytes:
    """Minimal big-endian serialization of a felt."""
    return value.to_bytes((value.bit_length() + 7) // 8, "big")


def to_hex(value: int) -> str:
    """Format a felt as a 0x-prefixed, 64 hex digit string."""
    return f"0x{value:064x}"


def parse_felt(value: str) -> int:
    """Parse a hex (0x...) or decimal felt string."""
    value = value.strip()
    if value.lower().startswith("0x"):
        return int(value, 16)
    return int(value)


class AddressDeriver:
    """Computes the counterfactual account address for a phone number.

    Usage:
        deriver = AddressDeriver(factory_address, class_hash)
        address = deriver.derive_address("+33612345678")
    """

    def __init__(
        self,
        deployer_address: int,
        class_hash: int,
        constructor_calldata: Optional[Sequence[int]] = None,
    ):
        self.deployer_address = deployer_address
        self.class_hash = class_hash
        self.constructor_calldata = list(constructor_calldata or [])

    def phone_felt(self, phone: str) -> int:
        """Validate and pack a phone number."""
        return encode_short_string(validate_e164(phone))

    def salt(self, phone: str) -> int:
        """Deployment salt for a phone number."""
        return starknet_keccak(felt_to_bytes(self.phone_felt(phone)))

    def derive_address(self, phone: str) -> int:
        """Derive the account address for an E.164 phone number.

        Raises:
            InvalidPhoneNumber: If the phone is not E.164
            PhoneNumberTooLong: If it does not fit in a felt
        """
        return compute_address(
            class_hash=self.class_hash,
            constructor_calldata=self.constructor_calldata,
            salt=self.salt(phone),
            deployer_address=self.deployer_address,
        )

    def derive_address_hex(self, phone: str) -> str:
        """Derive the account address as a hex string."""
        return to_hex(self.derive_address(phone))
