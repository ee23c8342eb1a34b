"""
Price Feed Adapter

Keeps the latest price for every symbol someone cares about: symbols held in
active contests plus symbols recently quoted or searched. A background loop
refreshes them, and each changed batch is mirrored to Redis, broadcast on
/topic/live-prices and handed to listeners (the leaderboard).

One symbol failing, timing out or coming back empty never affects the rest
of the batch; it simply keeps its previous price.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Set

from contest_engine.core.exceptions import PriceUnavailable, ValidationError
from contest_engine.core.redis import RedisPriceMirror
from contest_engine.core.websocket_manager import TopicHub
from contest_engine.models.common import Clock, utcnow
from contest_engine.models.messages import LIVE_PRICES_TOPIC, PriceTick
from contest_engine.services.quote_providers import ProviderQuote, QuoteProvider, SymbolMatch

logger = logging.getLogger(__name__)

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9&.\-]{0,19}$")
PRICE_STEP = Decimal("0.01")

PriceListener = Callable[[Dict[str, Decimal]], Awaitable[None]]


def normalize_symbol(raw: str, suffix: str = ".NS") -> str:
    """
    Canonical exchange symbol: ``reliance`` -> ``RELIANCE.NS``.
    Symbols that already carry a market suffix are kept as given.
    """
    symbol = (raw or "").strip().upper()
    if not SYMBOL_PATTERN.match(symbol):
        raise ValidationError(f"Invalid stock symbol: {raw!r}")
    if "." not in symbol:
        symbol = f"{symbol}{suffix}"
    return symbol


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: Decimal
    timestamp: datetime


class PriceFeed:
    def __init__(
        self,
        provider: QuoteProvider,
        hub: TopicHub,
        mirror: Optional[RedisPriceMirror] = None,
        clock: Clock = utcnow,
        suffix: str = ".NS",
        quote_timeout: float = 4.0,
        max_quote_age: float = 60.0,
        recent_ttl: float = 900.0,
    ):
        self.provider = provider
        self.hub = hub
        self.mirror = mirror
        self.clock = clock
        self.suffix = suffix
        self.quote_timeout = quote_timeout
        self.max_quote_age = max_quote_age
        self.recent_ttl = recent_ttl

        self._cache: Dict[str, PriceQuote] = {}
        self._held: Dict[Hashable, frozenset] = {}
        self._recent: Dict[str, datetime] = {}
        self._listeners: List[PriceListener] = []

    # ── Interest set ──────────────────────────────────────────────────

    def normalize(self, raw: str) -> str:
        return normalize_symbol(raw, self.suffix)

    def track(self, owner: Hashable, symbols: Iterable[str]) -> None:
        """Replace the symbols ``owner`` (a contest) needs priced."""
        held = frozenset(symbols)
        if held:
            self._held[owner] = held
        else:
            self._held.pop(owner, None)

    def untrack(self, owner: Hashable) -> None:
        self._held.pop(owner, None)

    def touch(self, symbol: str) -> None:
        self._recent[symbol] = self.clock()

    def interest(self) -> Set[str]:
        now = self.clock()
        expired = [
            sym for sym, seen in self._recent.items()
            if (now - seen).total_seconds() > self.recent_ttl
        ]
        for sym in expired:
            del self._recent[sym]

        symbols: Set[str] = set(self._recent)
        for held in self._held.values():
            symbols |= held
        return symbols

    def add_listener(self, listener: PriceListener) -> None:
        self._listeners.append(listener)

    # ── Reads ─────────────────────────────────────────────────────────

    def latest_prices(self) -> Dict[str, Decimal]:
        """Last known price per symbol, regardless of age"""
        return {sym: q.price for sym, q in self._cache.items()}

    def cached(self, symbol: str) -> Optional[PriceQuote]:
        return self._cache.get(symbol)

    def _is_fresh(self, quote: PriceQuote) -> bool:
        return (self.clock() - quote.timestamp).total_seconds() <= self.max_quote_age

    async def get_price(self, raw_symbol: str) -> Decimal:
        return (await self.quote(raw_symbol)).price

    async def quote(self, raw_symbol: str) -> PriceQuote:
        """
        Fresh price for one symbol.

        Served from cache when young enough, otherwise fetched on demand.
        Raises PriceUnavailable when neither yields a fresh quote.
        """
        symbol = self.normalize(raw_symbol)
        self.touch(symbol)

        cached = self._cache.get(symbol)
        if cached is not None and self._is_fresh(cached):
            return cached

        fetched = await self._fetch(symbol)
        if fetched is None:
            raise PriceUnavailable(
                f"No fresh price available for {symbol}; please retry",
                details={"symbol": symbol},
            )
        changed = self._store({symbol: fetched})
        if changed:
            await self._publish(changed)
        return self._cache[symbol]

    async def search(self, query: str, limit: int = 10) -> List[SymbolMatch]:
        query = (query or "").strip()
        if not query:
            return []
        try:
            matches = await asyncio.wait_for(
                self.provider.search(query, limit), timeout=self.quote_timeout
            )
        except asyncio.TimeoutError:
            raise PriceUnavailable("Symbol search timed out; please retry")
        except Exception as e:
            logger.warning(f"Symbol search failed for {query!r}: {e}")
            raise PriceUnavailable("Symbol search is unavailable; please retry")

        for match in matches:
            self.touch(match.symbol)
        return matches

    # ── Ticks ─────────────────────────────────────────────────────────

    async def _fetch(self, symbol: str) -> Optional[ProviderQuote]:
        try:
            return await asyncio.wait_for(
                self.provider.fetch_quote(symbol), timeout=self.quote_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Quote for {symbol} timed out after {self.quote_timeout}s")
        except Exception as e:
            logger.warning(f"Quote for {symbol} failed: {e}")
        return None

    def _store(self, fetched: Dict[str, ProviderQuote]) -> Dict[str, Decimal]:
        now = self.clock()
        changed: Dict[str, Decimal] = {}
        for symbol, quote in fetched.items():
            price = quote.price.quantize(PRICE_STEP)
            if price <= 0:
                logger.warning(f"Ignoring non-positive price for {symbol}: {price}")
                continue
            previous = self._cache.get(symbol)
            self._cache[symbol] = PriceQuote(symbol=symbol, price=price, timestamp=now)
            if previous is None or previous.price != price:
                changed[symbol] = price
        return changed

    async def tick(self) -> Dict[str, Decimal]:
        """Refresh every interesting symbol; returns the prices that changed."""
        symbols = sorted(self.interest())
        if not symbols:
            return {}

        results = await asyncio.gather(*(self._fetch(sym) for sym in symbols))
        fetched = {sym: quote for sym, quote in zip(symbols, results) if quote is not None}
        skipped = len(symbols) - len(fetched)
        if skipped:
            logger.info(f"Price tick skipped {skipped}/{len(symbols)} symbols")

        changed = self._store(fetched)
        if changed:
            await self._publish(changed)
        return changed

    async def _publish(self, changed: Dict[str, Decimal]) -> None:
        now = self.clock()
        if self.mirror is not None:
            stamp = now.isoformat()
            for symbol, price in changed.items():
                await self.mirror.mirror(symbol, str(price), stamp)

        self.hub.publish(LIVE_PRICES_TOPIC, PriceTick(prices=changed, timestamp=now))

        for listener in self._listeners:
            try:
                await listener(changed)
            except Exception:
                logger.exception("Price listener failed")

    async def run(self, interval: float) -> None:
        """Background loop: tick forever, surviving provider errors."""
        logger.info(f"Price feed started ({self.provider.provider_name}, every {interval}s)")
        while True:
            try:
                changed = await self.tick()
                if changed:
                    logger.debug(f"Price tick updated {len(changed)} symbols")
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Price tick failed")
            await asyncio.sleep(interval)
