"""
Input Sanitization Utilities

Non-failing cleanup of untrusted text using bleach 6.0+. The sanitizer is the
"clean and continue" counterpart to the validator: it never raises, it removes
markup and script-bearing fragments and returns what is left.

Sanitization Steps (sanitize_string):
- Strip all HTML tags and comments with bleach.clean (no tags allowed)
- Unescape entities so that encoded brackets cannot survive as text
- Remove stray '<' and '>' characters
- Remove javascript: and vbscript: protocol markers
- Remove on*= event handler patterns
- Trim surrounding whitespace

Dependencies:
- bleach 6.0+: HTML tag and comment stripping
"""

import html
import re
from enum import Enum
from typing import Any

import bleach


_ANGLE_BRACKETS = re.compile(r'[<>]')
_SCRIPT_PROTOCOLS = re.compile(r'(?:java|vb)script\s*:', re.IGNORECASE)
_EVENT_HANDLERS = re.compile(r'on\w+\s*=', re.IGNORECASE)


class FieldPolicy(Enum):
    """How the validator treats a top-level request body field."""

    REJECT = "reject"
    SANITIZE = "sanitize"


def _remove_until_stable(pattern: re.Pattern, text: str) -> str:
    # Removal can splice a new match together, e.g. "javajavascript:script:"
    previous = None
    while previous != text:
        previous = text
        text = pattern.sub('', text)
    return text


def sanitize_string(value: str) -> str:
    """
    Strip markup and script-bearing fragments from a string.

    Args:
        value: Untrusted text

    Returns:
        Cleaned, trimmed text. Never raises for string input.
    """
    cleaned = bleach.clean(
        value,
        tags=set(),
        attributes={},
        strip=True,
        strip_comments=True
    )
    cleaned = html.unescape(cleaned)
    cleaned = _ANGLE_BRACKETS.sub('', cleaned)
    cleaned = _remove_until_stable(_SCRIPT_PROTOCOLS, cleaned)
    cleaned = _remove_until_stable(_EVENT_HANDLERS, cleaned)
    return cleaned.strip()


def sanitize_value(value: Any) -> Any:
    """
    Apply sanitize_string recursively.

    Lists and tuples come back as lists, dict keys and values are both
    cleaned, and any other scalar is returned unchanged.
    """
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, (list, tuple)):
        return [sanitize_value(item) for item in value]
    if isinstance(value, dict):
        return {
            sanitize_string(key) if isinstance(key, str) else key: sanitize_value(item)
            for key, item in value.items()
        }
    return value


__all__ = ['FieldPolicy', 'sanitize_string', 'sanitize_value']
