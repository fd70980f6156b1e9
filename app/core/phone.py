# app/core/phone.py
"""
Phone number helpers: E.164 construction and digit normalisation.

Contacts store a country code plus whatever the manager typed
("07700 900123", "+44 (0)7700 900123", "0044...").  The SMS gateway
needs E.164, and inbound webhooks are matched on bare digits.
"""
from __future__ import annotations

import re

__all__ = ["COUNTRY_DIAL_CODES", "to_e164", "normalize_digits"]

COUNTRY_DIAL_CODES: dict[str, str] = {
    "US": "+1", "CA": "+1", "GB": "+44", "AU": "+61", "NZ": "+64",
    "IE": "+353", "IN": "+91", "SG": "+65", "MX": "+52", "DE": "+49",
    "FR": "+33", "ES": "+34", "IT": "+39",
}

_DEFAULT_DIAL_CODE = "+1"

# Longest first: "0011" must win over "00"
_ACCESS_PREFIXES = ("0011", "011", "001", "00")

# Calling codes recognised at the start of an already-international number
_KNOWN_CODES = ("1", "33", "34", "39", "44", "49", "52", "61", "64", "65", "91", "353")

# Country code followed by a trunk 0 that does not belong in E.164 (Italy keeps it)
_TRUNK_ZERO_PREFIXES = (
    "+440", "+610", "+640", "+3530", "+910", "+650",
    "+520", "+490", "+330", "+340", "+10",
)
_TRUNK_ZERO_RE = re.compile(r"^(\+\d{1,3})0")
_NON_DIGIT_RE = re.compile(r"\D")


def normalize_digits(phone: str) -> str:
    """Digits only, for comparing numbers typed in different formats."""
    return _NON_DIGIT_RE.sub("", phone or "")


def _drop_trunk_zero(number: str) -> str:
    if number.startswith(_TRUNK_ZERO_PREFIXES):
        return _TRUNK_ZERO_RE.sub(r"\1", number, count=1)
    return number


def to_e164(country_code: str, phone: str) -> str:
    """
    Build an E.164 number from a contact's country code and stored phone.

    >>> to_e164("GB", "07700 900123")
    '+447700900123'
    >>> to_e164("US", "+44 (0)20 7946 0958")
    '+442079460958'
    """
    cleaned = normalize_digits(phone)

    if (phone or "").strip().startswith("+"):
        return _drop_trunk_zero("+" + cleaned)

    for prefix in _ACCESS_PREFIXES:
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break

    if cleaned.startswith(_KNOWN_CODES):
        return _drop_trunk_zero("+" + cleaned)

    # National number
    if cleaned.startswith("0") and country_code != "IT":
        cleaned = cleaned[1:]

    return COUNTRY_DIAL_CODES.get((country_code or "").upper(), _DEFAULT_DIAL_CODE) + cleaned
