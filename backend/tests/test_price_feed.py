"""Tests for symbol normalization, partial-failure ticks and the Redis mirror."""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import FakeClock
from contest_engine.core.exceptions import PriceUnavailable, ValidationError
from contest_engine.core.redis import PRICE_CHANNEL, RedisPriceMirror
from contest_engine.core.websocket_manager import TopicHub
from contest_engine.models.messages import LIVE_PRICES_TOPIC, PriceTick, decode_message
from contest_engine.services.price_feed import PriceFeed, normalize_symbol
from contest_engine.services.quote_providers import (
    ProviderQuote,
    QuoteProvider,
    SimulatedQuoteProvider,
    StaticQuoteProvider,
    YahooQuoteProvider,
)


class SlowProvider(QuoteProvider):
    provider_name = "SLOW"

    async def fetch_quote(self, symbol):
        await asyncio.sleep(5)


@pytest.fixture
def feed_clock():
    return FakeClock()


@pytest.fixture
def hub():
    return TopicHub(queue_size=8)


@pytest.fixture
def static():
    return StaticQuoteProvider({"RELIANCE.NS": "500", "TCS.NS": "3500", "INFY.NS": "1500"})


@pytest.fixture
def feed(static, hub, feed_clock):
    return PriceFeed(static, hub, clock=feed_clock, quote_timeout=0.5, max_quote_age=60)


class TestNormalize:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("reliance", "RELIANCE.NS"),
            ("  TCS ", "TCS.NS"),
            ("M&M", "M&M.NS"),
            ("BAJAJ-AUTO", "BAJAJ-AUTO.NS"),
            ("INFY.BO", "INFY.BO"),
            ("RELIANCE.NS", "RELIANCE.NS"),
        ],
    )
    def test_valid(self, raw, expected):
        assert normalize_symbol(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", ".NS", "A B", "X" * 21, "<script>"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            normalize_symbol(raw)

    def test_custom_suffix(self):
        assert normalize_symbol("infy", suffix=".BO") == "INFY.BO"


class TestTick:
    @pytest.mark.asyncio
    async def test_one_failing_symbol_does_not_block_others(self, feed, static, hub):
        feed.track("contest", {"RELIANCE.NS", "TCS.NS", "INFY.NS"})
        await feed.tick()

        static.set_price("RELIANCE.NS", "510")
        static.set_price("INFY.NS", "1490")
        static.failing.add("TCS.NS")
        changed = await feed.tick()

        assert changed == {"RELIANCE.NS": Decimal("510"), "INFY.NS": Decimal("1490")}
        assert feed.latest_prices()["TCS.NS"] == Decimal("3500")

    @pytest.mark.asyncio
    async def test_missing_symbol_is_skipped(self, feed):
        feed.track("contest", {"RELIANCE.NS", "GHOST.NS"})
        changed = await feed.tick()
        assert changed == {"RELIANCE.NS": Decimal("500")}
        assert "GHOST.NS" not in feed.latest_prices()

    @pytest.mark.asyncio
    async def test_slow_symbol_times_out(self, hub, feed_clock):
        feed = PriceFeed(SlowProvider(), hub, clock=feed_clock, quote_timeout=0.05)
        feed.track("contest", {"RELIANCE.NS"})
        assert await feed.tick() == {}

    @pytest.mark.asyncio
    async def test_changes_are_broadcast_and_handed_to_listeners(self, feed, hub, static):
        sub = hub.open()
        hub.subscribe(sub, LIVE_PRICES_TOPIC)
        seen = []

        async def listener(changed):
            seen.append(changed)

        feed.add_listener(listener)
        feed.track("contest", {"RELIANCE.NS"})
        await feed.tick()
        await feed.tick()  # unchanged, no broadcast

        frame = decode_message(sub.queue.get_nowait())
        assert isinstance(frame, PriceTick)
        assert frame.prices == {"RELIANCE.NS": Decimal("500")}
        assert sub.queue.empty()
        assert seen == [{"RELIANCE.NS": Decimal("500")}]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_tick(self, feed):
        async def broken(changed):
            raise RuntimeError("boom")

        feed.add_listener(broken)
        feed.track("contest", {"RELIANCE.NS"})
        assert await feed.tick() == {"RELIANCE.NS": Decimal("500")}

    @pytest.mark.asyncio
    async def test_prices_mirrored_to_redis(self, feed):
        client = AsyncMock()
        feed.mirror = RedisPriceMirror(client, ttl_seconds=60)
        feed.track("contest", {"RELIANCE.NS"})

        await feed.tick()

        key, ttl, payload = client.setex.await_args.args
        assert key == "price:RELIANCE.NS"
        assert ttl == 60
        assert json.loads(payload)["price"] == "500.00"
        channel, _ = client.publish.await_args.args
        assert channel == PRICE_CHANNEL

    @pytest.mark.asyncio
    async def test_redis_failure_is_not_fatal(self, feed):
        client = AsyncMock()
        client.setex.side_effect = ConnectionError("redis down")
        feed.mirror = RedisPriceMirror(client)
        feed.track("contest", {"RELIANCE.NS"})
        assert await feed.tick() == {"RELIANCE.NS": Decimal("500")}


class TestQuotes:
    @pytest.mark.asyncio
    async def test_fresh_cache_is_reused(self, feed, static):
        await feed.get_price("RELIANCE")
        await feed.get_price("reliance")
        assert static.calls == ["RELIANCE.NS"]

    @pytest.mark.asyncio
    async def test_stale_cache_is_refetched(self, feed, static, feed_clock):
        await feed.get_price("RELIANCE")
        static.set_price("RELIANCE.NS", "505")
        feed_clock.advance(seconds=61)
        assert await feed.get_price("RELIANCE") == Decimal("505")

    @pytest.mark.asyncio
    async def test_stale_price_is_not_served_when_upstream_fails(self, feed, static, feed_clock):
        await feed.get_price("RELIANCE")
        static.failing.add("RELIANCE.NS")
        feed_clock.advance(seconds=61)
        with pytest.raises(PriceUnavailable):
            await feed.get_price("RELIANCE")

    @pytest.mark.asyncio
    async def test_recent_quotes_expire_from_interest(self, feed, feed_clock):
        await feed.quote("TCS")
        assert "TCS.NS" in feed.interest()
        feed_clock.advance(seconds=feed.recent_ttl + 1)
        assert "TCS.NS" not in feed.interest()

    @pytest.mark.asyncio
    async def test_search_touches_results(self, feed):
        matches = await feed.search("tcs")
        assert [m.symbol for m in matches] == ["TCS.NS"]
        assert "TCS.NS" in feed.interest()
        assert await feed.search("   ") == []


class TestProviders:
    @pytest.mark.asyncio
    async def test_simulated_walk_is_bounded_and_reproducible(self):
        first = SimulatedQuoteProvider(seed=3)
        second = SimulatedQuoteProvider(seed=3)
        a1 = await first.fetch_quote("TCS.NS")
        a2 = await first.fetch_quote("TCS.NS")
        b1 = await second.fetch_quote("TCS.NS")

        assert a1.price == b1.price
        assert abs(a2.price - a1.price) <= a1.price * Decimal("0.006")
        assert [m.symbol for m in await first.search("bank")][:2] == ["HDFCBANK.NS", "ICICIBANK.NS"]

    @pytest.mark.asyncio
    async def test_yahoo_parses_chart_and_search(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v8/finance/chart/RELIANCE.NS":
                return httpx.Response(200, json={
                    "chart": {"result": [{"meta": {"regularMarketPrice": 2875.4}}], "error": None}
                })
            if request.url.path == "/v1/finance/search":
                return httpx.Response(200, json={"quotes": [
                    {"symbol": "RELIANCE.NS", "longname": "Reliance Industries", "exchDisp": "NSE"},
                    {"shortname": "no symbol"},
                ]})
            return httpx.Response(404, json={"chart": {"result": None, "error": {"code": "Not Found"}}})

        client = httpx.AsyncClient(
            base_url="https://yahoo.test", transport=httpx.MockTransport(handler)
        )
        provider = YahooQuoteProvider(client=client)

        quote = await provider.fetch_quote("RELIANCE.NS")
        assert isinstance(quote, ProviderQuote)
        assert quote.price == Decimal("2875.4")
        assert await provider.fetch_quote("MISSING.NS") is None

        [match] = await provider.search("reliance")
        assert (match.symbol, match.name, match.exchange) == ("RELIANCE.NS", "Reliance Industries", "NSE")
        await provider.close()

    @pytest.mark.asyncio
    async def test_yahoo_retries_transient_errors(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request.url.path)
            if len(attempts) < 2:
                return httpx.Response(503)
            return httpx.Response(200, json={
                "chart": {"result": [{"meta": {"regularMarketPrice": 100}}], "error": None}
            })

        client = httpx.AsyncClient(
            base_url="https://yahoo.test", transport=httpx.MockTransport(handler)
        )
        provider = YahooQuoteProvider(client=client)
        quote = await provider.fetch_quote("TCS.NS")
        assert quote.price == Decimal("100")
        assert len(attempts) == 2
        await provider.close()
