"""
Phone number helpers shared by the SMS and WhatsApp channels.

Numbers arrive in whatever format users typed them. ``normalize_phone_number``
reduces them to country-code-prefixed digits; ``format_e164`` adds the ``+``.

Examples (default country code 91):
    "98765 43210"        → "919876543210"
    "+91 98765-43210"    → "919876543210"
    "0091 9876543210"    → "919876543210"
    "09876543210"        → "919876543210"
    "+91 0 98765 43210"  → "919876543210"
    "+44 20 7946 0958"   → "442079460958"
"""

from __future__ import annotations

import re
from typing import Optional

from backend.app.core.config import settings

_NON_DIGITS = re.compile(r"[^0-9]")


def _default_country_code() -> str:
    return str(settings.DEFAULT_COUNTRY_CODE)


def normalize_phone_number(raw: Optional[str], country_code: Optional[str] = None) -> str:
    """Digits only, with country code, no ``+``. Empty string for empty input."""
    if not raw:
        return ""
    cc = country_code or _default_country_code()
    digits = _NON_DIGITS.sub("", str(raw))

    if digits.startswith("00"):
        digits = digits[2:]

    # Local trunk prefix: 0 + 10 digits
    if len(digits) == 11 and digits.startswith("0") and cc == "91":
        digits = digits[1:]

    # Single trunk 0 written after the country code
    if len(digits) == len(cc) + 11 and digits.startswith(cc + "0"):
        digits = cc + digits[len(cc) + 1:]

    # Any other 0 leading the subscriber part is kept; validate_phone_number rejects it
    if 11 <= len(digits) <= 15:
        return digits

    if len(digits) == 10:
        return cc + digits
    return digits


def validate_phone_number(raw: Optional[str]) -> bool:
    """10–15 digits; with a country code, the subscriber part may not start with 0."""
    if not raw:
        return False
    digits = _NON_DIGITS.sub("", str(raw))
    if len(digits) < 10 or len(digits) > 15:
        return False
    if len(digits) >= 11 and digits[-10:].startswith("0"):
        return False
    return True


def format_e164(raw: Optional[str], country_code: Optional[str] = None) -> Optional[str]:
    """``+`` + normalised digits, or None when the number is unusable."""
    normalized = normalize_phone_number(raw, country_code)
    if not normalized or not validate_phone_number(normalized):
        return None
    return f"+{normalized}"
