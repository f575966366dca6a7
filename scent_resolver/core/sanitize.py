"""
Input sanitization.

Cleans free-text user input before it reaches the cache or a provider.
"""

import re
from typing import Any

from ..errors import InvalidArgument

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_text(value: Any, field: str = "query") -> str:
    """Strip markup, collapse whitespace and trim.

    Args:
        value: Raw user input
        field: Field name used in the error message

    Returns:
        Cleaned, non-empty text

    Raises:
        InvalidArgument: If the value is not a string or is empty once cleaned
    """
    if not isinstance(value, str):
        raise InvalidArgument(f"{field} must be a string")
    cleaned = _TAG_RE.sub("", value)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    if not cleaned:
        raise InvalidArgument(f"{field} must not be empty")
    return cleaned


def normalize_key(value: str) -> str:
    """Comparison form of a text: case-folded with whitespace collapsed."""
    return _WHITESPACE_RE.sub(" ", value).strip().casefold()
