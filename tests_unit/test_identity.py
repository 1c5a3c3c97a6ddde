"""
Identity Normalizer Tests (Unit)
================================

WHAT: Unit tests for the comparison keys used by the profile matcher.
WHY: Street prefix and last-name token rules decide most real matches;
     a regression silently drops attributed revenue.

NOTE:
These tests live outside `postmatch/tests/` to avoid loading the
database fixtures in its `conftest.py`.

REFERENCES:
- postmatch/services/identity.py
"""

from types import SimpleNamespace

import pytest

from postmatch.services.identity import OrderIdentity, extract_street_prefix, last_token, normalize


@pytest.mark.parametrize("address,expected", [
    ("Bredgade 19, 1.tv.", "Bredgade 19"),
    ("Bredgade 19D", "Bredgade 19"),
    ("nygade 12b", "nygade 12"),
    ("Postboks", "Postboks"),
    ("", ""),
    ("12 High Street", "12"),
])
def test_extract_street_prefix(address, expected) -> None:
    assert extract_street_prefix(address) == expected


def test_last_token() -> None:
    assert last_token("hansen holm") == "holm"
    assert last_token("  berg ") == "berg"
    assert last_token("") == ""
    assert last_token(None) == ""


def test_normalize() -> None:
    assert normalize("  Anna@Example.COM ") == "anna@example.com"
    assert normalize(None) == ""


def _order(**overrides) -> SimpleNamespace:
    values = dict(
        email="anna@example.com",
        first_name="anna",
        last_name="berg",
        address="nygade 12",
        zip_code="8000",
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _profile(**overrides) -> SimpleNamespace:
    values = dict(
        email="",
        first_name="Anna",
        last_name="Berg",
        address="Nygade 12B",
        zip_code="8000",
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_identity_from_order_uses_prefix_and_last_token() -> None:
    identity = OrderIdentity.from_order(_order(last_name="Von Berg", address="Nygade 12, 2. th"))

    assert identity.street_prefix == "nygade 12"
    assert identity.last_name_token == "berg"


def test_address_match_is_case_insensitive() -> None:
    identity = OrderIdentity.from_order(_order(email=""))

    assert identity.matches_address(_profile())
    assert identity.matches(_profile())


@pytest.mark.parametrize("field,value", [
    ("zip_code", "8200"),
    ("first_name", "Karen"),
    ("last_name", "Holm"),
    ("address", "Vestergade 12"),
])
def test_address_match_requires_every_part(field, value) -> None:
    identity = OrderIdentity.from_order(_order(email=""))

    assert not identity.matches(_profile(**{field: value}))


def test_email_match_ignores_address() -> None:
    identity = OrderIdentity.from_order(_order(address="", zip_code=""))

    assert identity.matches_email(_profile(email=" ANNA@example.com", address="", zip_code=""))
    assert not identity.can_match_address


def test_blank_order_matches_nothing() -> None:
    identity = OrderIdentity.from_order(_order(email="", first_name="", address="", zip_code=""))
    blank_profile = _profile(email="", first_name="", last_name="", address="", zip_code="")

    assert not identity.matches(blank_profile)
