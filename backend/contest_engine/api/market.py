"""
Market data API routes
Quote and symbol lookup, plus the live WebSocket channel carrying
leaderboard deltas and price ticks.
"""

import asyncio
import logging
import re
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as SchemaError

from contest_engine.core.dependencies import get_current_user, get_engine
from contest_engine.core.exceptions import SessionExpired
from contest_engine.core.security import AuthenticatedUser, decode_token
from contest_engine.core.websocket_manager import Subscription, TopicHub
from contest_engine.models.market import QuoteResponse, SymbolSearchResult
from contest_engine.models.messages import (
    LIVE_PRICES_TOPIC,
    StreamError,
    Subscribed,
    SubscriptionRequest,
    encode_message,
)
from contest_engine.services.engine import ContestEngine

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()

CONTEST_TOPIC = re.compile(
    r"^/topic/contest/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


# ============================================================================
# LOOKUPS
# ============================================================================

@router.get("/quote/{symbol}", response_model=QuoteResponse)
async def get_quote(
    symbol: str,
    user: AuthenticatedUser = Depends(get_current_user),
    engine: ContestEngine = Depends(get_engine),
):
    """Latest price for a symbol; ``RELIANCE`` is read as ``RELIANCE.NS``."""
    quote = await engine.price_feed.quote(symbol)
    return QuoteResponse(symbol=quote.symbol, price=quote.price, timestamp=quote.timestamp)


@router.get("/search", response_model=List[SymbolSearchResult])
async def search_symbols(
    q: str = Query(default="", max_length=50),
    user: AuthenticatedUser = Depends(get_current_user),
    engine: ContestEngine = Depends(get_engine),
):
    matches = await engine.price_feed.search(q)
    return [
        SymbolSearchResult(symbol=m.symbol, name=m.name, exchange=m.exchange)
        for m in matches
    ]


# ============================================================================
# LIVE CHANNEL
# ============================================================================

def is_valid_topic(topic: str) -> bool:
    return topic == LIVE_PRICES_TOPIC or bool(CONTEST_TOPIC.match(topic))


def handle_request(hub: TopicHub, sub: Subscription, raw: str) -> Optional[str]:
    """Apply one client frame; returns the reply frame, if any."""
    try:
        request = SubscriptionRequest.model_validate_json(raw)
    except SchemaError:
        return encode_message(StreamError(message="Malformed subscription request"))

    if not is_valid_topic(request.topic):
        return encode_message(StreamError(message="Unknown topic", topic=request.topic))

    if request.action == "subscribe":
        hub.subscribe(sub, request.topic)
        return encode_message(Subscribed(topic=request.topic))
    hub.unsubscribe(sub, request.topic)
    return None


async def _pump(websocket: WebSocket, sub: Subscription) -> None:
    while True:
        frame = await sub.receive()
        await websocket.send_text(frame)


@ws_router.websocket("/ws")
async def live_channel(websocket: WebSocket, token: str = ""):
    """
    Single subscription channel.
    Usage: ws://localhost:8000/ws?token=<jwt>, then send
    {"action": "subscribe", "topic": "/topic/contest/<id>"}
    """
    engine: ContestEngine = websocket.app.state.engine
    try:
        user = decode_token(token, engine.settings.jwt_secret, engine.settings.JWT_ALGORITHM)
    except SessionExpired as e:
        await websocket.close(code=4401, reason=e.message)
        return

    await websocket.accept()
    hub = engine.hub
    sub = hub.open()
    sender = asyncio.create_task(_pump(websocket, sub))
    logger.info(f"Live channel opened for {user.user_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            reply = handle_request(hub, sub, raw)
            if reply is not None:
                sub.deliver(reply)
    except WebSocketDisconnect:
        pass
    finally:
        # Disconnecting only drops subscriptions; nothing server-side is undone
        hub.close(sub)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        logger.info(f"Live channel closed for {user.user_id}")
