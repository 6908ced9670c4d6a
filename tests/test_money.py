"""Tests for amount conversion helpers."""

from decimal import Decimal

import pytest

from paywarden.money import format_amount, format_units, from_units, parse_amount, to_units


def test_parse_amount_rejects_floats():
    with pytest.raises(TypeError, match="not floats"):
        parse_amount(0.1)


@pytest.mark.parametrize("raw", ["-1", "abc", "NaN", "Infinity", ""])
def test_parse_amount_rejects_invalid(raw):
    with pytest.raises(ValueError, match="Invalid amount"):
        parse_amount(raw)


def test_to_units_is_exact():
    assert to_units("0.10") == 100_000
    assert to_units("1000") == 1_000_000_000
    assert to_units("0.000001") == 1
    assert to_units(Decimal("4800")) == 4_800_000_000


def test_to_units_rejects_sub_unit_precision():
    with pytest.raises(ValueError, match="decimal places"):
        to_units("0.0000001")


def test_from_units():
    assert from_units(200_000_000) == Decimal("200.000000")


def test_format_amount_keeps_two_places():
    assert format_amount("0.1") == "0.10"
    assert format_amount("5") == "5.00"
    assert format_amount("0.015") == "0.015"
    assert format_amount(Decimal("1.000000")) == "1.00"


def test_format_units():
    assert format_units(100_000) == "0.10"
    assert format_units(-2_500_000) == "-2.50"
