"""
Quote providers.

A provider turns a normalized symbol (``RELIANCE.NS``) into its latest price.
Providers only report what they successfully fetched; deciding what to do
about a missing symbol is the price feed's job.
"""

from __future__ import annotations

import logging
import random
import zlib
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from contest_engine.models.common import utcnow

logger = logging.getLogger(__name__)


# Popular NIFTY 50 constituents offered by the trade widget
NIFTY_UNIVERSE = (
    "RELIANCE", "TCS", "HDFCBANK", "INFY", "HINDUNILVR", "ICICIBANK", "ITC",
    "SBIN", "BAJFINANCE", "BHARTIARTL", "KOTAKBANK", "HCLTECH", "ASIANPAINT",
    "MARUTI", "AXISBANK", "LT", "BAJAJFINSV", "WIPRO", "ULTRACEMCO", "NESTLEIND",
)


@dataclass(frozen=True)
class ProviderQuote:
    symbol: str
    price: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class SymbolMatch:
    symbol: str
    name: str
    exchange: str


class QuoteProvider:
    provider_name: str

    async def fetch_quote(self, symbol: str) -> Optional[ProviderQuote]:
        """
        Fetch the latest price for one symbol.

        Returns None when the upstream has no price for it. Transport errors
        propagate; the caller treats them as a skipped symbol.
        """
        raise NotImplementedError

    async def search(self, query: str, limit: int = 10) -> List[SymbolMatch]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _to_decimal(raw: Any) -> Optional[Decimal]:
    if raw in (None, ""):
        return None
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, TypeError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


# ── Yahoo Finance ────────────────────────────────────────────────────

class YahooQuoteProvider(QuoteProvider):
    """Async client for the Yahoo Finance chart and search endpoints."""

    provider_name = "YAHOO"

    def __init__(
        self,
        base_url: str = "https://query1.finance.yahoo.com",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "User-Agent": "Mozilla/5.0 (contest-engine)",
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=0.5, max=4),
        reraise=True,
    )
    async def _get(self, path: str, params: Dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def fetch_quote(self, symbol: str) -> Optional[ProviderQuote]:
        try:
            data = await self._get(
                f"/v8/finance/chart/{symbol}",
                params={"interval": "1m", "range": "1d"},
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise

        chart = (data or {}).get("chart") or {}
        results = chart.get("result") or []
        if chart.get("error") or not results:
            return None

        meta = results[0].get("meta") or {}
        price = _to_decimal(meta.get("regularMarketPrice"))
        if price is None:
            return None
        return ProviderQuote(symbol=symbol, price=price, timestamp=utcnow())

    async def search(self, query: str, limit: int = 10) -> List[SymbolMatch]:
        data = await self._get(
            "/v1/finance/search",
            params={"q": query, "quotesCount": limit, "newsCount": 0},
        )
        matches = []
        for item in (data or {}).get("quotes", []):
            sym = item.get("symbol")
            if not sym:
                continue
            matches.append(SymbolMatch(
                symbol=sym,
                name=item.get("longname") or item.get("shortname") or "",
                exchange=item.get("exchDisp") or item.get("exchange") or "",
            ))
        return matches[:limit]


# ── Local providers ──────────────────────────────────────────────────

class SimulatedQuoteProvider(QuoteProvider):
    """
    Random-walk prices for development without market access.

    Each symbol starts from a price derived from its name and moves at most
    ``max_step`` (fraction) per fetch, so runs are reproducible for a seed.
    """

    provider_name = "SIMULATED"

    def __init__(
        self,
        universe: Iterable[str] = NIFTY_UNIVERSE,
        suffix: str = ".NS",
        seed: int = 7,
        max_step: float = 0.005,
    ):
        self.universe = tuple(universe)
        self.suffix = suffix
        self.max_step = max_step
        self._rng = random.Random(seed)
        self._prices: Dict[str, Decimal] = {}

    def _base_price(self, symbol: str) -> Decimal:
        return Decimal(100 + zlib.crc32(symbol.encode()) % 3900)

    async def fetch_quote(self, symbol: str) -> Optional[ProviderQuote]:
        last = self._prices.get(symbol) or self._base_price(symbol)
        step = Decimal(str(self._rng.uniform(-self.max_step, self.max_step)))
        price = (last * (1 + step)).quantize(Decimal("0.01"))
        self._prices[symbol] = price
        return ProviderQuote(symbol=symbol, price=price, timestamp=utcnow())

    async def search(self, query: str, limit: int = 10) -> List[SymbolMatch]:
        q = query.strip().upper()
        return [
            SymbolMatch(symbol=f"{name}{self.suffix}", name=name, exchange="NSE")
            for name in self.universe
            if q in name
        ][:limit]


class StaticQuoteProvider(QuoteProvider):
    """Fixed price table; symbols marked failing raise like a broken upstream."""

    provider_name = "STATIC"

    def __init__(self, prices: Optional[Dict[str, Any]] = None):
        self.prices: Dict[str, Decimal] = {
            sym: Decimal(str(p)) for sym, p in (prices or {}).items()
        }
        self.failing: Set[str] = set()
        self.calls: List[str] = []

    def set_price(self, symbol: str, price: Any) -> None:
        self.prices[symbol] = Decimal(str(price))

    async def fetch_quote(self, symbol: str) -> Optional[ProviderQuote]:
        self.calls.append(symbol)
        if symbol in self.failing:
            raise httpx.ConnectError(f"upstream unavailable for {symbol}")
        price = self.prices.get(symbol)
        if price is None:
            return None
        return ProviderQuote(symbol=symbol, price=price, timestamp=utcnow())

    async def search(self, query: str, limit: int = 10) -> List[SymbolMatch]:
        q = query.strip().upper()
        return [
            SymbolMatch(symbol=sym, name=sym.split(".")[0], exchange="STATIC")
            for sym in sorted(self.prices)
            if q in sym
        ][:limit]


def build_provider(name: str, **kwargs: Any) -> QuoteProvider:
    if name == "yahoo":
        return YahooQuoteProvider(
            base_url=kwargs.get("base_url", "https://query1.finance.yahoo.com"),
            timeout=kwargs.get("timeout", 10.0),
        )
    if name == "simulated":
        return SimulatedQuoteProvider(suffix=kwargs.get("suffix", ".NS"))
    if name == "static":
        return StaticQuoteProvider()
    raise ValueError(f"Unknown price provider: {name}")
