from __future__ import annotations

from decimal import Decimal

import pytest

from backend.app.billing.money import format_money, from_minor_units, parse_money, to_minor_units, to_money
from backend.app.billing.tax import calculate_sst_quote


def test_to_money_rounds_half_up():
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(2.675) == Decimal("2.68")
    assert to_money(7) == Decimal("7.00")


@pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", ""])
def test_to_money_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        to_money(value)


@pytest.mark.parametrize("value", ["1e30", Decimal("9" * 40)])
def test_amounts_too_large_for_cents_are_rejected(value):
    with pytest.raises(ValueError):
        to_money(value)
    assert parse_money(value) is None


def test_parse_money_is_lenient():
    assert parse_money(" 45.5 ") == Decimal("45.50")
    assert parse_money("forty") is None
    assert parse_money(None) is None
    assert parse_money(True) is None


def test_minor_unit_conversions():
    assert to_minor_units("12.34") == 1234
    assert to_minor_units(Decimal("0.015")) == 2
    assert from_minor_units(19440) == Decimal("194.40")
    assert from_minor_units(None) is None


def test_format_money_always_has_two_places():
    assert format_money(Decimal("45")) == "45.00"
    assert format_money(Decimal("18.5")) == "18.50"


def test_sst_quote_on_subtotal():
    quote = calculate_sst_quote("180", " MYR ")

    assert quote.subtotal == Decimal("180.00")
    assert quote.sst_rate == Decimal("0.08")
    assert quote.sst_amount == Decimal("14.40")
    assert quote.total == Decimal("194.40")
    assert quote.currency == "myr"


def test_sst_quote_rounds_tax_to_cents():
    quote = calculate_sst_quote(Decimal("33.33"), "myr")

    assert quote.sst_amount == Decimal("2.67")
    assert quote.total == Decimal("36.00")


@pytest.mark.parametrize("subtotal", [-5, "oops", None])
def test_sst_quote_treats_bad_subtotal_as_zero(subtotal):
    quote = calculate_sst_quote(subtotal, "myr")

    assert quote.subtotal == Decimal("0.00")
    assert quote.total == Decimal("0.00")


def test_sst_quote_with_custom_rate():
    quote = calculate_sst_quote("100", "myr", rate="0.06")

    assert quote.sst_amount == Decimal("6.00")
