"""Validation helpers for Polish taxpayer identifiers."""

import re

NIP_WEIGHTS = (6, 5, 7, 2, 3, 4, 5, 6, 7)


def normalize_nip(nip: str) -> str:
    """Strip separators and an optional PL prefix: 'PL 123-456-32-18' -> '1234563218'."""
    if not nip:
        return ""
    cleaned = nip.strip().upper()
    if cleaned.startswith("PL"):
        cleaned = cleaned[2:]
    return re.sub(r"\D", "", cleaned)


def is_valid_nip(nip: str) -> bool:
    """
    Validate a NIP with the modulo-11 checksum.

    The weighted sum of the first nine digits modulo 11 must equal the
    tenth digit; a remainder of 10 is never valid.
    """
    digits = normalize_nip(nip)
    if len(digits) != 10:
        return False
    checksum = sum(w * int(d) for w, d in zip(NIP_WEIGHTS, digits)) % 11
    return checksum == int(digits[9])
