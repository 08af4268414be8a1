"""
Email normalization utilities.

Remote email search is a loose index, so tagged addresses
(``user+tag@domain``) are matched against their base form as well.
"""

from typing import Iterable, List, Optional, Union


def normalize_email(email: Optional[str]) -> str:
    """
    Normalize an email address for comparison.

    Examples:
        >>> normalize_email("  Jane.Doe@Example.ORG ")
        'jane.doe@example.org'
        >>> normalize_email(None)
        ''
    """
    if not email or not isinstance(email, str):
        return ""
    return email.strip().lower()


def base_email(email: Optional[str]) -> str:
    """
    Return the base form of a tagged address.

    Examples:
        >>> base_email("jane+promo@x.com")
        'jane@x.com'
        >>> base_email("jane@x.com")
        'jane@x.com'
    """
    normalized = normalize_email(email)
    if "@" not in normalized:
        return normalized

    local, _, domain = normalized.rpartition("@")
    if "+" in local:
        local = local.split("+", 1)[0]
    return f"{local}@{domain}"


def email_candidates(emails: Union[str, Iterable[str], None]) -> List[str]:
    """
    Build the ordered, deduplicated list of addresses to search for.

    Every tagged address is followed by its base form.

    Examples:
        >>> email_candidates(["Jane+Promo@x.com", "jane+promo@x.com"])
        ['jane+promo@x.com', 'jane@x.com']
        >>> email_candidates("")
        []
    """
    if emails is None:
        return []
    if isinstance(emails, str):
        emails = [emails]

    candidates: List[str] = []
    for email in emails:
        normalized = normalize_email(email)
        if not normalized:
            continue
        for variant in (normalized, base_email(normalized)):
            if variant not in candidates:
                candidates.append(variant)
    return candidates


def emails_equivalent(left: Optional[str], right: Optional[str]) -> bool:
    """
    Check whether two addresses denote the same mailbox.

    Case-insensitive exact match, or one side's base form equals the
    other side.

    Examples:
        >>> emails_equivalent("JANE@x.com", "jane@x.com")
        True
        >>> emails_equivalent("jane+promo@x.com", "jane@x.com")
        True
        >>> emails_equivalent("jane@x.com", "janet@x.com")
        False
    """
    a = normalize_email(left)
    b = normalize_email(right)
    if not a or not b:
        return False
    return a == b or base_email(a) == b or a == base_email(b)
