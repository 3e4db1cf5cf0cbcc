"""Kenyan mobile-number validation and normalization."""

import re

from pesapush.common.errors import ValidationError

KENYAN_MOBILE_PATTERN = re.compile(r"^(?:\+?254|0)?[17]\d{8}$")
INVALID_PHONE_MESSAGE = "Please enter a valid Kenyan phone number"
COUNTRY_CALLING_CODE = "254"


def validate(raw: str | None) -> bool:
    """True when `raw` is a Kenyan mobile number (07xx, 01xx, 254..., +254...)."""

    if not raw:
        return False
    return KENYAN_MOBILE_PATTERN.fullmatch(raw) is not None


def normalize(raw: str) -> str:
    """Rewrite to `+254XXXXXXXXX`. Idempotent; only call on validated input."""

    cleaned = re.sub(r"\D", "", raw)
    if cleaned.startswith("0"):
        cleaned = COUNTRY_CALLING_CODE + cleaned[1:]
    elif len(cleaned) == 9 and cleaned[0] in "17":
        # bare subscriber number, e.g. 712345678
        cleaned = COUNTRY_CALLING_CODE + cleaned
    if cleaned.startswith(COUNTRY_CALLING_CODE):
        cleaned = "+" + cleaned
    return cleaned


def msisdn(phone: str) -> str:
    """Digits-only form expected by the mobile-money push endpoint."""

    return re.sub(r"\D", "", phone)


def require_valid(raw: str | None) -> str:
    """Validate then normalize, raising `ValidationError` on bad input."""

    if not validate(raw):
        raise ValidationError(INVALID_PHONE_MESSAGE)
    return normalize(raw)
