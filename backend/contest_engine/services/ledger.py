"""
Portfolio ledger arithmetic.

Pure functions over (cash, position, quantity, price). The trade executor
applies the returned values to the database rows; nothing here touches I/O.

Cost basis uses the weighted-average method: a BUY re-averages the price, a
SELL peels cost basis off proportionally and leaves the average unchanged.
"""

from dataclasses import dataclass
from decimal import Decimal

from contest_engine.core.exceptions import (
    InsufficientFunds,
    InsufficientHoldings,
    ValidationError,
)

ZERO = Decimal("0")


@dataclass(frozen=True)
class Position:
    quantity: int
    average_buy_price: Decimal
    buy_value: Decimal

    @classmethod
    def empty(cls) -> "Position":
        return cls(quantity=0, average_buy_price=ZERO, buy_value=ZERO)

    @property
    def is_closed(self) -> bool:
        return self.quantity == 0


@dataclass(frozen=True)
class LedgerChange:
    cash_balance: Decimal
    position: Position
    trade_value: Decimal


def _check_order(quantity: int, price: Decimal) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be a positive whole number of shares")
    if price <= 0:
        raise ValidationError("Execution price must be positive")


def apply_buy(cash_balance: Decimal, position: Position, quantity: int, price: Decimal) -> LedgerChange:
    _check_order(quantity, price)
    cost = price * quantity
    if cost > cash_balance:
        raise InsufficientFunds(
            f"Insufficient funds. Required: {cost:.2f}, Available: {cash_balance:.2f}",
            details={"required": str(cost), "available": str(cash_balance)},
        )

    new_qty = position.quantity + quantity
    new_avg = (position.quantity * position.average_buy_price + quantity * price) / new_qty
    return LedgerChange(
        cash_balance=cash_balance - cost,
        position=Position(
            quantity=new_qty,
            average_buy_price=new_avg,
            buy_value=position.buy_value + cost,
        ),
        trade_value=cost,
    )


def apply_sell(cash_balance: Decimal, position: Position, quantity: int, price: Decimal) -> LedgerChange:
    _check_order(quantity, price)
    if quantity > position.quantity:
        raise InsufficientHoldings(
            f"Insufficient holdings. Required: {quantity}, Available: {position.quantity}",
            details={"required": quantity, "available": position.quantity},
        )

    proceeds = price * quantity
    remaining = position.quantity - quantity
    if remaining == 0:
        new_position = Position.empty()
    else:
        peeled = position.buy_value * quantity / position.quantity
        new_position = Position(
            quantity=remaining,
            average_buy_price=position.average_buy_price,
            buy_value=position.buy_value - peeled,
        )
    return LedgerChange(
        cash_balance=cash_balance + proceeds,
        position=new_position,
        trade_value=proceeds,
    )
