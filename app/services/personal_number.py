"""Swedish personal identity number (personnummer) validation and one-way hashing.

The raw number arrives from BankID on a completed order. Only the hash returned
here may be persisted; callers must not log or store the input.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

ACCEPTED_LENGTHS = (10, 12)  # YYMMDDNNNN or YYYYMMDDNNNN

FORMAT_ERROR = "Invalid Swedish personal number format"
CHECKSUM_ERROR = "Personal number checksum validation failed"


@dataclass(frozen=True)
class PersonalNumberResult:
    valid: bool
    hash: str = ""
    error: str | None = None


def normalize_personal_number(raw: str | None) -> str:
    """Strip everything that is not a digit (hyphens, plus sign, spaces)."""
    return re.sub(r"\D", "", raw or "")


def hash_personal_number(normalized: str) -> str:
    """sha256 hex digest (64 chars) of the normalized digit string."""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def has_valid_checksum(digits: str) -> bool:
    """Luhn check over the last 10 digits; the final digit is the check digit."""
    if not digits.isdigit() or len(digits) not in ACCEPTED_LENGTHS:
        return False
    tail = digits[-10:]
    total = 0
    multiplier = 2
    for ch in reversed(tail[:-1]):
        product = int(ch) * multiplier
        if product > 9:
            product -= 9
        total += product
        multiplier = 1 if multiplier == 2 else 2
    return (10 - total % 10) % 10 == int(tail[-1])


def validate_and_hash(raw: str | None) -> PersonalNumberResult:
    digits = normalize_personal_number(raw)
    if len(digits) not in ACCEPTED_LENGTHS:
        return PersonalNumberResult(valid=False, error=FORMAT_ERROR)
    if not has_valid_checksum(digits):
        return PersonalNumberResult(valid=False, error=CHECKSUM_ERROR)
    return PersonalNumberResult(valid=True, hash=hash_personal_number(digits))
