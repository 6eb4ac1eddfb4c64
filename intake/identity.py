"""
📇 Identity Normalizer
----------------------
Canonicalizes WhatsApp channel addresses to a single record key:

    "whatsapp:+34 600 11 22 33"  → "whatsapp:+34600112233"
    "0034-600-112-233"           → "whatsapp:+34600112233"
    "+34 (600) 11.22.33"         → "whatsapp:+34600112233"

Anything that cannot be reduced to 10–15 international digits is rejected.
"""

from __future__ import annotations

import re
from typing import Any

from .errors import InvalidIdentity

CHANNEL_PREFIX = "whatsapp:"
MIN_DIGITS = 10
MAX_DIGITS = 15

_PREFIX_RE = re.compile(r"^\s*whatsapp\s*:\s*", re.IGNORECASE)
_ALLOWED_RE = re.compile(r"^\+?[\d\s\-\.\(\)/]+$")
_CANONICAL_RE = re.compile(r"^whatsapp:\+[1-9]\d{%d,%d}$" % (MIN_DIGITS - 1, MAX_DIGITS - 1))


def normalize_identity(raw: Any) -> str:
    """Return the canonical ``whatsapp:+<digits>`` form or raise InvalidIdentity."""
    if raw is None:
        raise InvalidIdentity(raw, "empty")
    value = _PREFIX_RE.sub("", str(raw)).strip()
    if not value:
        raise InvalidIdentity(raw, "empty")
    if not _ALLOWED_RE.match(value):
        raise InvalidIdentity(raw, "unexpected characters")

    digits = re.sub(r"\D", "", value)
    if not value.startswith("+") and digits.startswith("00"):
        digits = digits[2:]
    if not digits or digits.startswith("0"):
        raise InvalidIdentity(raw, "missing country code")
    if not (MIN_DIGITS <= len(digits) <= MAX_DIGITS):
        raise InvalidIdentity(raw, f"expected {MIN_DIGITS}-{MAX_DIGITS} digits, got {len(digits)}")
    return f"{CHANNEL_PREFIX}+{digits}"


def is_valid_identity(value: Any) -> bool:
    try:
        normalize_identity(value)
        return True
    except InvalidIdentity:
        return False


def is_canonical(value: Any) -> bool:
    return isinstance(value, str) and bool(_CANONICAL_RE.match(value))


def display_number(identity: str) -> str:
    """Strip the channel prefix for logs and CLI output."""
    return identity[len(CHANNEL_PREFIX):] if identity.startswith(CHANNEL_PREFIX) else identity
