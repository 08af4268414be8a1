"""
Helper utilities for contact value normalization and comparison.

Normalized forms define equality for deduplication: emails compare
lower-cased with ``+tag`` variants matching their base address, phones
compare on digits only, addresses on street and city with the postal
code compared only when both sides carry one.
"""

from .address import addresses_equal, normalize_address_part
from .emails import base_email, email_candidates, emails_equivalent, normalize_email
from .phone import normalize_phone, phones_equal

__all__ = [
    "addresses_equal",
    "normalize_address_part",
    "base_email",
    "email_candidates",
    "emails_equivalent",
    "normalize_email",
    "normalize_phone",
    "phones_equal",
]
