"""
Street address comparison utilities.
"""

import re
from typing import Any, Mapping, Optional


def normalize_address_part(value: Optional[str]) -> str:
    """
    Normalize one address component for comparison.

    Examples:
        >>> normalize_address_part("  12  Main St ")
        '12 main st'
    """
    if not value or not isinstance(value, str):
        return ""
    return re.sub(r"\s+", " ", value).strip().lower()


def addresses_equal(left: Mapping[str, Any], right: Mapping[str, Any]) -> bool:
    """
    Compare two addresses given as mappings with street/city/postal_code.

    Street and city compare case-insensitively. The postal code is only
    compared when both sides have one.

    Examples:
        >>> addresses_equal(
        ...     {"street": "12 Main St", "city": "Greenville", "postal_code": "29601"},
        ...     {"street": "12 MAIN ST", "city": "greenville"},
        ... )
        True
    """
    street = normalize_address_part(left.get("street"))
    city = normalize_address_part(left.get("city"))
    if not street:
        return False
    if street != normalize_address_part(right.get("street")):
        return False
    if city != normalize_address_part(right.get("city")):
        return False

    left_postal = normalize_address_part(left.get("postal_code"))
    right_postal = normalize_address_part(right.get("postal_code"))
    if left_postal and right_postal:
        return left_postal == right_postal
    return True
