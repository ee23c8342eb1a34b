"""
Market lookup schemas (quote and symbol search responses)
"""

from datetime import datetime

from contest_engine.models.common import CamelModel, Money


class QuoteResponse(CamelModel):
    symbol: str
    price: Money
    timestamp: datetime


class SymbolSearchResult(CamelModel):
    symbol: str
    name: str
    exchange: str
