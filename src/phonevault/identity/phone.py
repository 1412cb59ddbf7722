"""Phone number validation and normalization."""

import re

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

from phonevault.errors import InvalidPhoneNumber

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def validate_e164(phone: str) -> str:
    """Check that a phone string is already in E.164 form.

    The string is returned unchanged: address derivation hashes the exact
    bytes, so no normalization happens here.

    Raises:
        InvalidPhoneNumber: If the string is not E.164
    """
    if not isinstance(phone, str) or not E164_PATTERN.match(phone):
        raise InvalidPhoneNumber(f"Not an E.164 phone number: {phone!r}")

    try:
        parsed = phonenumbers.parse(phone, None)
    except NumberParseException as e:
        raise InvalidPhoneNumber(f"Invalid phone number format: {e}")

    if not phonenumbers.is_possible_number(parsed):
        raise InvalidPhoneNumber(f"Impossible phone number: {phone!r}")

    return phone


def normalize_phone(phone: str, default_region: str = "FR") -> str:
    """Normalize loose user input to E.164.

    Args:
        phone: Phone number in any common format
        default_region: Region for numbers without a country prefix

    Returns:
        E.164 string, e.g. +33612345678
    """
    try:
        parsed = phonenumbers.parse(phone, default_region)
    except NumberParseException as e:
        raise InvalidPhoneNumber(f"Invalid phone number format: {e}")

    if not phonenumbers.is_possible_number(parsed):
        raise InvalidPhoneNumber(f"Impossible phone number: {phone!r}")

    return validate_e164(phonenumbers.format_number(parsed, PhoneNumberFormat.E164))


def mask_phone(phone: str) -> str:
    """Mask a phone number for logging, keeping the last 4 digits."""
    digits = "".join(filter(str.isdigit, phone))
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"
