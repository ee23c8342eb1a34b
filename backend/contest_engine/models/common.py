"""
Shared column helpers and API base model.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Callable

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel
from sqlalchemy import Column, DateTime, Numeric


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Injectable source of "now"; tests pass a controllable clock
Clock = Callable[[], datetime]


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything in the engine is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def money_column(**kwargs: Any) -> Column:
    """NUMERIC(20, 6) column for cash, prices and cost basis"""
    return Column(Numeric(20, 6, asdecimal=True), nullable=False, **kwargs)


def timestamp_column(**kwargs: Any) -> Column:
    return Column(DateTime(timezone=True), nullable=False, **kwargs)


# Decimals go over the wire as JSON numbers, the shape the client formats
Money = Annotated[Decimal, PlainSerializer(lambda v: float(v), return_type=float)]


class CamelModel(BaseModel):
    """Request/response schema using the client's camelCase field names"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
