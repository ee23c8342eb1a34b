"""
Trading models: Transaction (append-only trade ledger)
Maps to: transactions table
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import Field as PydanticField
from sqlmodel import Field, SQLModel

from contest_engine.models.common import (
    CamelModel,
    Money,
    ensure_utc,
    money_column,
    timestamp_column,
    utcnow,
)
from contest_engine.models.portfolio import PortfolioResponse


# ============================================================================
# ENUMS
# ============================================================================

class TransactionType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


# ============================================================================
# TRANSACTION MODEL (executed trades)
# ============================================================================

class Transaction(SQLModel, table=True):
    """Executed trade record. Never updated or deleted once written."""
    __tablename__ = "transactions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    participant_id: UUID = Field(foreign_key="participants.id", index=True)
    contest_id: UUID = Field(foreign_key="contests.id", index=True)
    stock_symbol: str = Field(max_length=32)

    transaction_type: TransactionType
    quantity: int = Field(gt=0)
    execution_price: Decimal = Field(sa_column=money_column())
    total_value: Decimal = Field(sa_column=money_column())

    timestamp: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class TransactionRequest(CamelModel):
    """Trade placement request"""
    stock_symbol: str = PydanticField(min_length=1, max_length=32)
    transaction_type: TransactionType
    quantity: int = PydanticField(gt=0, strict=True)


class TransactionResponse(CamelModel):
    id: UUID
    participant_id: UUID
    contest_id: UUID
    stock_symbol: str
    transaction_type: TransactionType
    quantity: int
    execution_price: Money
    total_value: Money
    timestamp: datetime

    @classmethod
    def from_transaction(cls, tx: Transaction) -> "TransactionResponse":
        return cls(
            id=tx.id,
            participant_id=tx.participant_id,
            contest_id=tx.contest_id,
            stock_symbol=tx.stock_symbol,
            transaction_type=tx.transaction_type,
            quantity=tx.quantity,
            execution_price=tx.execution_price,
            total_value=tx.total_value,
            timestamp=ensure_utc(tx.timestamp),
        )


class TradeResult(CamelModel):
    """Executed trade plus the participant's updated valuation"""
    transaction: TransactionResponse
    portfolio: PortfolioResponse


class LeaderboardEntry(CamelModel):
    rank: int
    participant_id: UUID
    username: str
    total_portfolio_value: Money
    joined_at: datetime
