from decimal import Decimal

import pytest

from tradewins.errors import InvalidQuantity, OversellError
from tradewins.pricing import (
    BASE_PRICE,
    BUY,
    SELL,
    buy_total,
    quote_trade,
    sell_total,
    spot_price,
    to_money,
    validate_quantity,
)


def test_spot_price_is_linear_in_supply():
    assert spot_price(0) == Decimal("10.00")
    assert spot_price(1) == Decimal("10.01")
    assert spot_price(250) == Decimal("12.50")


def test_spot_price_clamps_negative_supply():
    assert spot_price(-5) == BASE_PRICE


@pytest.mark.parametrize("supply", [0, 1, 7, 99, 1000])
def test_spot_price_strictly_increases(supply):
    assert spot_price(supply + 1) > spot_price(supply)


@pytest.mark.parametrize("supply,qty", [(0, 1), (0, 10), (50, 10), (123, 37), (999, 250)])
def test_buy_total_matches_share_by_share_sum(supply, qty):
    expected = sum((spot_price(supply + k) for k in range(1, qty + 1)), Decimal("0"))
    assert buy_total(supply, qty) == expected


@pytest.mark.parametrize("supply,qty", [(1, 1), (10, 10), (60, 10), (500, 123)])
def test_sell_total_matches_share_by_share_sum(supply, qty):
    expected = sum((spot_price(supply - k) for k in range(qty)), Decimal("0"))
    assert sell_total(supply, qty) == expected


def test_buy_quote_from_supply_fifty():
    quote = quote_trade(50, 10, BUY)

    assert quote.first_price == Decimal("10.51")
    assert quote.last_price == Decimal("10.60")
    assert quote.total == Decimal("105.55")
    assert quote.avg_price == Decimal("10.555")
    assert quote.end_supply == 60
    assert quote.spot_before == Decimal("10.50")
    assert quote.spot_after == Decimal("10.60")


def test_sell_quote_walks_down_from_current_supply():
    quote = quote_trade(60, 10, SELL, holding=10)

    assert quote.first_price == Decimal("10.60")
    assert quote.last_price == Decimal("10.51")
    assert quote.total == Decimal("105.55")
    assert quote.end_supply == 50


@pytest.mark.parametrize("supply,qty", [(0, 1), (50, 10), (321, 79)])
def test_buy_then_sell_round_trip_is_exact_without_fees(supply, qty):
    bought = quote_trade(supply, qty, BUY)
    sold = quote_trade(bought.end_supply, qty, SELL, holding=qty)

    assert sold.total == bought.total
    assert sold.end_supply == supply


def test_sell_more_than_holding_is_rejected():
    with pytest.raises(OversellError) as exc_info:
        quote_trade(100, 11, SELL, holding=10)

    assert exc_info.value.requested == 11
    assert exc_info.value.owned == 10


def test_sell_quote_never_drops_supply_below_zero():
    quote = quote_trade(3, 5, SELL)
    assert quote.end_supply == 0


@pytest.mark.parametrize("bad", [0, -1, 2.5, "3", None, True, Decimal("1.5")])
def test_invalid_quantities_are_rejected(bad):
    with pytest.raises(InvalidQuantity):
        validate_quantity(bad)


def test_whole_decimal_quantity_is_accepted():
    assert validate_quantity(Decimal("4")) == 4


def test_unknown_side_is_rejected():
    with pytest.raises(ValueError):
        quote_trade(0, 1, "SHORT")


def test_to_money_quantizes_to_micro_units():
    assert to_money(Decimal("1.23456789")) == Decimal("1.234568")
    assert to_money(None) == Decimal("0.000000")
