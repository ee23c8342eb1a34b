"""
Portfolio Calculator Service

Values a participant's cash and holdings against the latest known prices.
Pure: the same (cash, holdings, prices) always yields the same valuation and
nothing is written back, so it can run on every price tick.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional, Protocol, Tuple
from uuid import UUID

from contest_engine.models.common import utcnow
from contest_engine.models.portfolio import HoldingValuation, PortfolioResponse

ZERO = Decimal("0")


class HoldingLike(Protocol):
    stock_symbol: str
    quantity: int
    average_buy_price: Decimal
    buy_value: Decimal


@dataclass(frozen=True)
class HoldingValue:
    stock_symbol: str
    quantity: int
    average_buy_price: Decimal
    buy_value: Decimal
    current_price: Decimal
    current_value: Decimal
    profit: Decimal
    price_stale: bool
    holding_id: Optional[UUID] = None


@dataclass(frozen=True)
class PortfolioValuation:
    cash_balance: Decimal
    holdings: Tuple[HoldingValue, ...]
    total_holdings_value: Decimal
    total_portfolio_value: Decimal
    total_profit_loss: Decimal


class PortfolioCalculator:
    """
    Real-time portfolio valuation.

    A holding without a known price is valued at its average buy price and
    flagged stale, so a missing quote never makes a portfolio look empty.
    """

    def value(
        self,
        cash_balance: Decimal,
        holdings: Iterable[HoldingLike],
        prices: Mapping[str, Decimal],
    ) -> PortfolioValuation:
        breakdown: List[HoldingValue] = []
        holdings_value = ZERO
        profit_loss = ZERO

        for holding in holdings:
            if holding.quantity <= 0:
                continue
            price = prices.get(holding.stock_symbol)
            stale = price is None
            if stale:
                price = Decimal(holding.average_buy_price)

            current_value = price * holding.quantity
            profit = current_value - Decimal(holding.buy_value)
            holdings_value += current_value
            profit_loss += profit

            breakdown.append(HoldingValue(
                stock_symbol=holding.stock_symbol,
                quantity=holding.quantity,
                average_buy_price=Decimal(holding.average_buy_price),
                buy_value=Decimal(holding.buy_value),
                current_price=price,
                current_value=current_value,
                profit=profit,
                price_stale=stale,
                holding_id=getattr(holding, "id", None),
            ))

        breakdown.sort(key=lambda h: (-h.current_value, h.stock_symbol))
        cash = Decimal(cash_balance)
        return PortfolioValuation(
            cash_balance=cash,
            holdings=tuple(breakdown),
            total_holdings_value=holdings_value,
            total_portfolio_value=cash + holdings_value,
            total_profit_loss=profit_loss,
        )

    def total_value(
        self,
        cash_balance: Decimal,
        holdings: Iterable[HoldingLike],
        prices: Mapping[str, Decimal],
    ) -> Decimal:
        return self.value(cash_balance, holdings, prices).total_portfolio_value

    def to_response(
        self,
        valuation: PortfolioValuation,
        participant_id: UUID,
        contest_id: UUID,
        as_of: Optional[datetime] = None,
    ) -> PortfolioResponse:
        return PortfolioResponse(
            participant_id=participant_id,
            contest_id=contest_id,
            cash_balance=valuation.cash_balance,
            total_holdings_value=valuation.total_holdings_value,
            total_portfolio_value=valuation.total_portfolio_value,
            total_profit_loss=valuation.total_profit_loss,
            holdings=[
                HoldingValuation(
                    id=h.holding_id,
                    stock_symbol=h.stock_symbol,
                    quantity=h.quantity,
                    average_buy_price=h.average_buy_price,
                    buy_value=h.buy_value,
                    current_price=h.current_price,
                    current_value=h.current_value,
                    profit=h.profit,
                    price_stale=h.price_stale,
                )
                for h in valuation.holdings
            ],
            updated_at=as_of or utcnow(),
        )
