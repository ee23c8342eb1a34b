"""Tests for the weighted-average ledger arithmetic."""

from decimal import Decimal

import pytest

from contest_engine.core.exceptions import (
    InsufficientFunds,
    InsufficientHoldings,
    ValidationError,
)
from contest_engine.services.ledger import Position, apply_buy, apply_sell


def test_buy_debits_cash_and_opens_position():
    change = apply_buy(Decimal("100000"), Position.empty(), 10, Decimal("500"))

    assert change.cash_balance == Decimal("95000")
    assert change.position.quantity == 10
    assert change.position.average_buy_price == Decimal("500")
    assert change.position.buy_value == Decimal("5000")
    assert change.trade_value == Decimal("5000")


def test_second_buy_reaverages_price():
    first = apply_buy(Decimal("100000"), Position.empty(), 10, Decimal("500"))
    second = apply_buy(first.cash_balance, first.position, 10, Decimal("600"))

    assert second.position.quantity == 20
    assert second.position.average_buy_price == Decimal("550")
    assert second.position.buy_value == Decimal("11000")
    assert second.cash_balance == Decimal("89000")


def test_sell_peels_cost_basis_and_keeps_average():
    bought = apply_buy(Decimal("100000"), Position.empty(), 10, Decimal("500"))
    sold = apply_sell(bought.cash_balance, bought.position, 4, Decimal("600"))

    assert sold.cash_balance == Decimal("97400")
    assert sold.position.quantity == 6
    assert sold.position.buy_value == Decimal("3000")
    assert sold.position.average_buy_price == Decimal("500")
    assert sold.trade_value == Decimal("2400")


def test_selling_everything_closes_position():
    bought = apply_buy(Decimal("10000"), Position.empty(), 5, Decimal("100"))
    sold = apply_sell(bought.cash_balance, bought.position, 5, Decimal("120"))

    assert sold.position.is_closed
    assert sold.position == Position.empty()
    assert sold.cash_balance == Decimal("10100")


def test_buy_beyond_cash_is_rejected():
    with pytest.raises(InsufficientFunds) as exc:
        apply_buy(Decimal("4999"), Position.empty(), 10, Decimal("500"))
    assert exc.value.details["required"] == "5000"


def test_buy_of_exactly_all_cash_is_allowed():
    change = apply_buy(Decimal("5000"), Position.empty(), 10, Decimal("500"))
    assert change.cash_balance == Decimal("0")


def test_oversell_is_rejected():
    position = Position(quantity=3, average_buy_price=Decimal("10"), buy_value=Decimal("30"))
    with pytest.raises(InsufficientHoldings):
        apply_sell(Decimal("0"), position, 4, Decimal("10"))


def test_sell_without_position_is_rejected():
    with pytest.raises(InsufficientHoldings):
        apply_sell(Decimal("1000"), Position.empty(), 1, Decimal("10"))


@pytest.mark.parametrize("quantity", [0, -5, True, 1.5, "3"])
def test_quantity_must_be_positive_integer(quantity):
    with pytest.raises(ValidationError):
        apply_buy(Decimal("1000"), Position.empty(), quantity, Decimal("10"))


def test_price_must_be_positive():
    with pytest.raises(ValidationError):
        apply_sell(Decimal("1000"), Position.empty(), 1, Decimal("0"))


def test_quantity_never_goes_negative_over_sequence():
    cash, position = Decimal("50000"), Position.empty()
    steps = [("BUY", 10, "100"), ("SELL", 3, "110"), ("BUY", 5, "90"), ("SELL", 12, "95")]
    for side, qty, price in steps:
        apply = apply_buy if side == "BUY" else apply_sell
        change = apply(cash, position, qty, Decimal(price))
        cash, position = change.cash_balance, change.position
        assert position.quantity >= 0

    assert position.is_closed
    with pytest.raises(InsufficientHoldings):
        apply_sell(cash, position, 1, Decimal("95"))
