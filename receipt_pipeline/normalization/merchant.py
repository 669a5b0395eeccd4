"""Merchant name cleanup."""

import re

UNKNOWN_MERCHANT = "Unknown Merchant"

# Applied in order; each strips a trailing annotation a card terminal adds
_NOISE_PATTERNS = [
    re.compile(r"\*TRIP.*$", re.IGNORECASE),
    re.compile(r"\s+\*\s*.*$"),
    re.compile(r"\s+#\d+.*$"),
    re.compile(r"\s+\d{4}.*$"),
    re.compile(r"\s+-\s+.*$"),
]

ACRONYM_MAX_LENGTH = 3


def _title_word(word: str) -> str:
    if word.isupper() and len(word) <= ACRONYM_MAX_LENGTH:
        return word
    if word.isupper() or word.islower():
        return word[:1].upper() + word[1:].lower()
    # Mixed case such as "McDonald's" is kept verbatim
    return word[:1].upper() + word[1:]


def normalize_merchant(name: str | None) -> str:
    """Strip terminal noise, collapse whitespace and title-case a merchant name.

    >>> normalize_merchant("STARBUCKS #4521")
    'Starbucks'
    >>> normalize_merchant("UBER   *TRIP 3HXYZ")
    'Uber'
    """
    if not name:
        return UNKNOWN_MERCHANT

    normalized = str(name)
    for pattern in _NOISE_PATTERNS:
        normalized = pattern.sub("", normalized)

    words = normalized.split()
    if not words:
        return UNKNOWN_MERCHANT
    return " ".join(_title_word(word) for word in words)
