"""
Stream messages pushed over the single WebSocket channel.

Every frame carries a ``type`` tag; producers build the concrete model and
consumers decode through ``decode_message`` which validates against the
tagged union instead of guessing from the payload shape.
"""

from datetime import datetime
from typing import Annotated, Dict, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter

from contest_engine.models.common import CamelModel, Money

LIVE_PRICES_TOPIC = "/topic/live-prices"


def contest_topic(contest_id: UUID | str) -> str:
    return f"/topic/contest/{contest_id}"


class LeaderboardDelta(CamelModel):
    type: Literal["LeaderboardDelta"] = "LeaderboardDelta"
    topic: str
    contest_id: UUID
    participant_id: UUID
    total_portfolio_value: Money


class PriceTick(CamelModel):
    type: Literal["PriceTick"] = "PriceTick"
    topic: str = LIVE_PRICES_TOPIC
    prices: Dict[str, Money]
    timestamp: datetime


class Subscribed(CamelModel):
    type: Literal["Subscribed"] = "Subscribed"
    topic: str


class StreamError(CamelModel):
    type: Literal["Error"] = "Error"
    message: str
    topic: Optional[str] = None


StreamMessage = Annotated[
    Union[LeaderboardDelta, PriceTick, Subscribed, StreamError],
    Field(discriminator="type"),
]

_stream_adapter: TypeAdapter = TypeAdapter(StreamMessage)


def encode_message(message: BaseModel) -> str:
    return message.model_dump_json(by_alias=True)


def decode_message(raw: str | bytes):
    """Parse a frame into its concrete message type; raises pydantic.ValidationError."""
    return _stream_adapter.validate_json(raw)


# ============================================================================
# CLIENT -> SERVER
# ============================================================================

class SubscriptionRequest(CamelModel):
    action: Literal["subscribe", "unsubscribe"]
    topic: str = Field(min_length=1, max_length=200)
