"""
tests/test_validators.py
"""

import pytest

from shared.utils.validators import (
    email_domain,
    normalize_aadhaar,
    normalize_email,
    validate_aadhaar,
    verhoeff_valid,
)


@pytest.mark.parametrize(
    "number, valid",
    [
        ("2363", True),
        ("2364", False),
        ("234567890124", True),
        ("234567890123", False),
        ("", False),
        ("12a4", False),
    ],
)
def test_verhoeff(number, valid):
    assert verhoeff_valid(number) is valid


def test_normalize_aadhaar():
    assert normalize_aadhaar("2345 6789-0124") == "234567890124"
    assert normalize_aadhaar(None) == ""


@pytest.mark.parametrize(
    "value, strict, expected",
    [
        ("234567890124", False, True),
        ("234567890123", False, True),
        ("234567890123", True, False),
        ("2345 6789 0124", True, True),
        ("12345", False, False),
        ("23456789012x", False, False),
        (None, False, False),
    ],
)
def test_validate_aadhaar(value, strict, expected):
    assert validate_aadhaar(value, strict_checksum=strict) is expected


def test_normalize_email():
    assert normalize_email("  asha@IITD.ac.in ") == "asha@iitd.ac.in"
    assert normalize_email("not-an-email") is None
    assert normalize_email("") is None


def test_email_domain():
    assert email_domain("asha@IITD.ac.in") == "iitd.ac.in"
    assert email_domain("broken") == ""
