"""Phone number normalisation for the two regions the clinic serves.

Region A is India (``+91``, mobile numbers start with 6-9) and region B is
US/Canada (``+1``).  A bare 10-digit number is ambiguous between the two, so
lookups probe every candidate from :func:`variations` and two raw numbers are
considered equal when their candidate sets overlap.
"""

from __future__ import annotations

import re

INDIA_CODE = "91"
NANP_CODE = "1"

_NON_DIGIT = re.compile(r"\D")

_VALID_PATTERNS = (
    re.compile(r"^\+?91[6-9]\d{9}$"),
    re.compile(r"^[6-9]\d{9}$"),
    re.compile(r"^\+?1[2-9]\d{9}$"),
    re.compile(r"^[2-9]\d{9}$"),
)

# 10 to 12 digit runs, allowing the usual separators in between
_PHONE_IN_TEXT = re.compile(r"\+?\d[\d\s().-]{8,16}\d")


def _digits(raw: str) -> str:
    return _NON_DIGIT.sub("", raw)


def normalize(raw: str | None) -> str:
    """Return *raw* in ``+<countrycode><digits>`` form, or ``""`` if empty."""
    if not raw:
        return ""
    raw = raw.strip()
    digits = _digits(raw)
    if not digits:
        return ""

    if raw.startswith("+"):
        return f"+{digits}"

    if len(digits) == 10:
        if digits[0] in "6789":
            return f"+{INDIA_CODE}{digits}"
        return f"+{NANP_CODE}{digits}"

    # 11/12 digits already carrying 1 or 91, and every other length, just
    # get the plus sign
    return f"+{digits}"


def variations(raw: str | None) -> list[str]:
    """Return the E.164 candidates for *raw*, most likely first.

    A 10-digit national number yields both the India and the US candidate
    (India first); everything else yields the single normalised form.
    """
    if not raw:
        return []
    raw = raw.strip()
    digits = _digits(raw)
    if not digits:
        return []
    if raw.startswith("+"):
        return [f"+{digits}"]
    if len(digits) == 10:
        return [f"+{INDIA_CODE}{digits}", f"+{NANP_CODE}{digits}"]
    return [f"+{digits}"]


def is_valid(raw: str | None) -> bool:
    """Check *raw* against the Indian and US/Canada numbering patterns."""
    if not raw:
        return False
    raw = raw.strip()
    digits = _digits(raw)
    candidates = (raw, digits, f"+{digits}")
    return any(p.match(c) for p in _VALID_PATTERNS for c in candidates)


def are_equal(first: str | None, second: str | None) -> bool:
    """True when both numbers can denote the same physical line."""
    if not first or not second:
        return False
    a, b = normalize(first), normalize(second)
    if not a or not b:
        return False
    if a == b:
        return True
    return not set(variations(first)).isdisjoint(variations(second))


def detect_country(raw: str | None) -> str:
    """Return ``IN``, ``US`` or ``UNKNOWN`` for *raw*."""
    normalized = normalize(raw)
    if normalized.startswith(f"+{INDIA_CODE}"):
        return "IN"
    if normalized.startswith(f"+{NANP_CODE}"):
        # Canada shares +1; without an area-code table we call it US
        return "US"
    return "UNKNOWN"


def format_phone(raw: str | None, style: str = "international") -> str:
    """Format *raw* for display.

    Args:
        raw: Phone number in any format.
        style: ``international`` (``+1 (555) 123-4567``), ``national``
            (``(555) 123-4567``) or ``compact`` (the normalised form).
    """
    normalized = normalize(raw)
    digits = normalized[1:]

    if style == "compact":
        return normalized

    if digits.startswith(INDIA_CODE) and len(digits) == 12:
        local = f"{digits[2:5]}-{digits[5:8]}-{digits[8:]}"
        return f"+91 {local}" if style == "international" else local
    if digits.startswith(NANP_CODE) and len(digits) == 11:
        local = f"({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
        return f"+1 {local}" if style == "international" else local
    return normalized


def extract_phone_digits(text: str | None) -> str | None:
    """Pull the first phone-like number out of free text, as typed.

    Separators are dropped but no country code is assumed, so a bare
    10-digit number stays ambiguous and :func:`variations` can still offer
    both regions.  Returns ``None`` when the text holds no run of 10-12
    digits.
    """
    if not text:
        return None
    for match in _PHONE_IN_TEXT.finditer(text):
        candidate = match.group(0)
        digits = _digits(candidate)
        if 10 <= len(digits) <= 12:
            return f"+{digits}" if candidate.startswith("+") else digits
    return None


def extract_phone(text: str | None) -> str | None:
    """Like :func:`extract_phone_digits`, but normalised."""
    digits = extract_phone_digits(text)
    return normalize(digits) if digits else None
