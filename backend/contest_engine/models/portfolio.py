"""
Portfolio models: Holding, plus valuation response schemas
Maps to: holdings table
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from contest_engine.models.common import (
    CamelModel,
    Money,
    money_column,
    timestamp_column,
    utcnow,
)


# ============================================================================
# HOLDING MODEL
# ============================================================================

class Holding(SQLModel, table=True):
    """
    A participant's open position in one symbol.
    Rows with zero quantity are deleted, never stored.
    """
    __tablename__ = "holdings"
    __table_args__ = (
        UniqueConstraint("participant_id", "stock_symbol", name="uniq_holding_participant_symbol"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    participant_id: UUID = Field(foreign_key="participants.id", index=True)
    stock_symbol: str = Field(index=True, max_length=32)

    quantity: int = Field(ge=0)
    average_buy_price: Decimal = Field(sa_column=money_column())
    buy_value: Decimal = Field(sa_column=money_column())

    updated_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


# ============================================================================
# RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class HoldingValuation(CamelModel):
    id: Optional[UUID] = None
    stock_symbol: str
    quantity: int
    average_buy_price: Money
    buy_value: Money
    current_price: Money
    current_value: Money
    profit: Money
    price_stale: bool = False


class PortfolioResponse(CamelModel):
    participant_id: UUID
    contest_id: UUID
    cash_balance: Money
    total_holdings_value: Money
    total_portfolio_value: Money
    total_profit_loss: Money
    holdings: List[HoldingValuation]
    updated_at: datetime
