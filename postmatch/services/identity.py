"""Identity normalization for order/profile matching.

WHAT:
    Canonicalizes free-text identity fields into comparable keys:
    - lower-cased, trimmed strings
    - street prefix up to the house number ("bredgade 19, 1.tv." -> "bredgade 19")
    - last token of a (possibly multi-part) last name

WHY:
    Orders come from the storefront checkout, profiles from CRM imports and
    CSV uploads. Casing, apartment suffixes and middle names differ between
    the two, so exact comparison would miss most real matches.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

# Leading non-digits followed by the first run of digits (the house number)
_STREET_PREFIX_RE = re.compile(r"^(\D*\d+)")


def normalize(value: Optional[str]) -> str:
    """Trim and lower-case; None becomes an empty string."""
    if not value:
        return ""
    return value.strip().lower()


def extract_street_prefix(address: str) -> str:
    """Return the house-number-bearing prefix of a street address.

    "Bredgade 19, 1.tv." and "Bredgade 19D" both yield "Bredgade 19".
    Addresses without a number are returned unchanged.
    """
    match = _STREET_PREFIX_RE.match(address)
    if not match:
        return address
    return match.group(1)


def last_token(name: Optional[str]) -> str:
    """Last whitespace-separated token of a name ("" for blank input)."""
    if not name:
        return ""
    parts = name.split()
    return parts[-1] if parts else ""


@dataclass(frozen=True)
class OrderIdentity:
    """Comparable identity keys of an order, all lower-cased."""

    email: str
    first_name: str
    last_name_token: str
    street_prefix: str
    zip_code: str

    @classmethod
    def from_order(cls, order) -> "OrderIdentity":
        address = normalize(order.address)
        return cls(
            email=normalize(order.email),
            first_name=normalize(order.first_name),
            last_name_token=last_token(normalize(order.last_name)),
            street_prefix=extract_street_prefix(address) if address else "",
            zip_code=normalize(order.zip_code),
        )

    @property
    def can_match_email(self) -> bool:
        return bool(self.email)

    @property
    def can_match_address(self) -> bool:
        return bool(self.street_prefix and self.zip_code and self.first_name)

    def matches_email(self, profile) -> bool:
        return self.can_match_email and normalize(profile.email) == self.email

    def matches_address(self, profile) -> bool:
        """Street prefix contained in the profile address, same zip, same names."""
        if not self.can_match_address:
            return False
        return (
            self.street_prefix in normalize(profile.address)
            and normalize(profile.zip_code) == self.zip_code
            and normalize(profile.first_name) == self.first_name
            and last_token(normalize(profile.last_name)) == self.last_name_token
        )

    def matches(self, profile) -> bool:
        return self.matches_email(profile) or self.matches_address(profile)
