"""
Phone number normalization utilities.
"""

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: Optional[str]) -> str:
    """
    Reduce a phone number to its digits.

    Examples:
        >>> normalize_phone("(864) 555-0100")
        '8645550100'
        >>> normalize_phone("864-555-0100")
        '8645550100'
        >>> normalize_phone(None)
        ''
    """
    if not phone:
        return ""
    return _NON_DIGITS.sub("", str(phone))


def phones_equal(left: Optional[str], right: Optional[str]) -> bool:
    """Two phones are equal when their digits are; empty never matches."""
    a = normalize_phone(left)
    return bool(a) and a == normalize_phone(right)
