"""Tests for portfolio valuation."""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from contest_engine.services.portfolio_calculator import PortfolioCalculator


@dataclass
class FakeHolding:
    stock_symbol: str
    quantity: int
    average_buy_price: Decimal
    buy_value: Decimal


def holding(symbol, qty, avg):
    avg = Decimal(avg)
    return FakeHolding(symbol, qty, avg, avg * qty)


def test_value_identity_after_price_change():
    calc = PortfolioCalculator()
    holdings = [holding("RELIANCE.NS", 6, "500"), holding("TCS.NS", 2, "3500")]
    prices = {"RELIANCE.NS": Decimal("600"), "TCS.NS": Decimal("3400")}

    valuation = calc.value(Decimal("90000"), holdings, prices)

    assert valuation.total_holdings_value == Decimal("3600") + Decimal("6800")
    assert valuation.total_portfolio_value == Decimal("90000") + valuation.total_holdings_value
    assert valuation.total_profit_loss == Decimal("600") - Decimal("200")
    assert [h.stock_symbol for h in valuation.holdings] == ["TCS.NS", "RELIANCE.NS"]


def test_missing_price_falls_back_to_average_and_flags_stale():
    calc = PortfolioCalculator()
    valuation = calc.value(Decimal("1000"), [holding("INFY.NS", 4, "1500")], {})

    [value] = valuation.holdings
    assert value.price_stale
    assert value.current_price == Decimal("1500")
    assert value.profit == Decimal("0")
    assert valuation.total_portfolio_value == Decimal("7000")


def test_zero_quantity_holdings_are_ignored():
    calc = PortfolioCalculator()
    valuation = calc.value(
        Decimal("500"), [holding("INFY.NS", 0, "1500")], {"INFY.NS": Decimal("1600")}
    )
    assert valuation.holdings == ()
    assert valuation.total_portfolio_value == Decimal("500")


def test_valuation_does_not_mutate_inputs():
    calc = PortfolioCalculator()
    h = holding("RELIANCE.NS", 10, "500")
    calc.value(Decimal("95000"), [h], {"RELIANCE.NS": Decimal("700")})
    assert h.quantity == 10
    assert h.buy_value == Decimal("5000")


def test_to_response_uses_camel_case_and_numbers():
    calc = PortfolioCalculator()
    valuation = calc.value(
        Decimal("95000"), [holding("RELIANCE.NS", 10, "500")], {"RELIANCE.NS": Decimal("510")}
    )
    as_of = datetime(2026, 1, 5, tzinfo=timezone.utc)
    response = calc.to_response(valuation, uuid4(), uuid4(), as_of=as_of)
    body = response.model_dump(by_alias=True, mode="json")

    assert body["cashBalance"] == 95000.0
    assert body["totalPortfolioValue"] == 100100.0
    assert body["holdings"][0]["stockSymbol"] == "RELIANCE.NS"
    assert body["holdings"][0]["currentValue"] == 5100.0
    assert body["holdings"][0]["priceStale"] is False
