"""Kenyan phone validation and normalization."""

import pytest

from pesapush.common.errors import ValidationError
from pesapush.services.checkout.phone import msisdn, normalize, require_valid, validate


@pytest.mark.parametrize(
    "raw",
    ["0712345678", "+254712345678", "254712345678", "0112345678", "712345678"],
)
def test_accepts_kenyan_mobile_numbers(raw):
    assert validate(raw)


@pytest.mark.parametrize(
    "raw",
    ["12345", "0812345678", "", None, "+255712345678", "07123456789", "07-1234-5678"],
)
def test_rejects_other_numbers(raw):
    assert not validate(raw)


@pytest.mark.parametrize("raw", [" 0712345678 ", "0712345678\t", "\n+254712345678"])
def test_rejects_surrounding_whitespace(raw):
    """The number is matched exactly as typed; nothing is trimmed first."""

    assert not validate(raw)
    with pytest.raises(ValidationError):
        require_valid(raw)


def test_normalize_to_international_format():
    assert normalize("0712345678") == "+254712345678"
    assert normalize("254712345678") == "+254712345678"
    assert normalize("+254 712 345 678") == "+254712345678"
    assert normalize("712345678") == "+254712345678"


@pytest.mark.parametrize("raw", ["0712345678", "254712345678", "+254712345678", "0112345678"])
def test_normalize_is_idempotent(raw):
    once = normalize(raw)
    assert normalize(once) == once


def test_require_valid_rejects_before_normalizing():
    """Invalid input surfaces the user-facing message, never a mangled number."""

    with pytest.raises(ValidationError) as excinfo:
        require_valid("0812345678")
    assert excinfo.value.message == "Please enter a valid Kenyan phone number"
    assert require_valid("0712345678") == "+254712345678"


def test_msisdn_strips_plus():
    assert msisdn("+254712345678") == "254712345678"
