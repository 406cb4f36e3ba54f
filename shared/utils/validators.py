"""
shared/utils/validators.py
Format validation for identifiers handled by the verification tracks.
"""

import re
from typing import Optional

from email_validator import EmailNotValidError, validate_email

_AADHAAR_RE = re.compile(r"^\d{12}$")

# Verhoeff tables (dihedral group D5)
_VERHOEFF_D = (
    (0, 1, 2, 3, 4, 5, 6, 7, 8, 9),
    (1, 2, 3, 4, 0, 6, 7, 8, 9, 5),
    (2, 3, 4, 0, 1, 7, 8, 9, 5, 6),
    (3, 4, 0, 1, 2, 8, 9, 5, 6, 7),
    (4, 0, 1, 2, 3, 9, 5, 6, 7, 8),
    (5, 9, 8, 7, 6, 0, 4, 3, 2, 1),
    (6, 5, 9, 8, 7, 1, 0, 4, 3, 2),
    (7, 6, 5, 9, 8, 2, 1, 0, 4, 3),
    (8, 7, 6, 5, 9, 3, 2, 1, 0, 4),
    (9, 8, 7, 6, 5, 4, 3, 2, 1, 0),
)
_VERHOEFF_P = (
    (0, 1, 2, 3, 4, 5, 6, 7, 8, 9),
    (1, 5, 7, 6, 2, 8, 3, 0, 9, 4),
    (5, 8, 0, 3, 7, 9, 6, 1, 4, 2),
    (8, 9, 1, 6, 0, 4, 3, 5, 2, 7),
    (9, 4, 5, 3, 1, 2, 6, 8, 7, 0),
    (4, 2, 8, 6, 5, 7, 3, 9, 0, 1),
    (2, 7, 9, 3, 8, 0, 6, 4, 1, 5),
    (7, 0, 4, 6, 9, 1, 3, 2, 5, 8),
)


def normalize_aadhaar(value: Optional[str]) -> str:
    """Strip the spaces and hyphens people type between digit groups."""
    if not value:
        return ""
    return re.sub(r"[\s-]", "", value)


def verhoeff_valid(number: str) -> bool:
    """True when the trailing digit is a correct Verhoeff check digit."""
    if not number or not number.isdigit():
        return False
    c = 0
    for i, digit in enumerate(reversed(number)):
        c = _VERHOEFF_D[c][_VERHOEFF_P[i % 8][int(digit)]]
    return c == 0


def validate_aadhaar(value: Optional[str], strict_checksum: bool = False) -> bool:
    """Aadhaar number: exactly 12 digits, optionally Verhoeff-checked."""
    cleaned = normalize_aadhaar(value)
    if not _AADHAAR_RE.match(cleaned):
        return False
    if strict_checksum:
        return verhoeff_valid(cleaned)
    return True


def normalize_email(value: Optional[str]) -> Optional[str]:
    """
    Return the normalized address, or None if the syntax is invalid.
    Deliverability (DNS) is not checked.
    """
    if not value:
        return None
    try:
        result = validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError:
        return None
    return result.normalized


def email_domain(email: str) -> str:
    return (email.rsplit("@", 1)[-1] if "@" in email else "").lower()
