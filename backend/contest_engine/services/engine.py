"""
Engine container: builds and wires every component for one app instance
and owns the background loops (price ticks, status sweep).
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from contest_engine.core.config import Settings
from contest_engine.core.database import Database
from contest_engine.core.redis import RedisPriceMirror
from contest_engine.core.websocket_manager import TopicHub
from contest_engine.models.common import Clock, utcnow
from contest_engine.services.contest_manager import ContestManager
from contest_engine.services.leaderboard import LeaderboardAggregator
from contest_engine.services.portfolio_calculator import PortfolioCalculator
from contest_engine.services.price_feed import PriceFeed
from contest_engine.services.quote_providers import QuoteProvider, build_provider
from contest_engine.services.trade_executor import TradeExecutor

logger = logging.getLogger(__name__)


class ContestEngine:
    def __init__(
        self,
        settings: Settings,
        quote_provider: Optional[QuoteProvider] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.clock = clock
        self.database = Database(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        self.hub = TopicHub(queue_size=settings.SUBSCRIBER_QUEUE_SIZE)

        self.provider = quote_provider or build_provider(
            settings.PRICE_PROVIDER,
            base_url=settings.YAHOO_BASE_URL,
            timeout=settings.QUOTE_TIMEOUT_SECONDS,
            suffix=settings.MARKET_SUFFIX,
        )
        self.price_feed = PriceFeed(
            self.provider,
            self.hub,
            clock=clock,
            suffix=settings.MARKET_SUFFIX,
            quote_timeout=settings.QUOTE_TIMEOUT_SECONDS,
            max_quote_age=settings.MAX_QUOTE_AGE_SECONDS,
            recent_ttl=settings.RECENT_SYMBOL_TTL_SECONDS,
        )

        self.calculator = PortfolioCalculator()
        self.contests = ContestManager(
            clock=clock,
            lock_timeout=settings.LOCK_TIMEOUT_SECONDS,
            invite_code_length=settings.INVITE_CODE_LENGTH,
        )
        self.leaderboard = LeaderboardAggregator(
            self.database,
            self.price_feed,
            self.hub,
            calculator=self.calculator,
            lock_timeout=settings.LOCK_TIMEOUT_SECONDS,
        )
        self.trades = TradeExecutor(
            self.contests,
            self.price_feed,
            self.leaderboard,
            calculator=self.calculator,
            lock_timeout=settings.LOCK_TIMEOUT_SECONDS,
            row_locks=self.database.supports_row_locks,
        )

        self.contests.add_status_listener(self.leaderboard.sync_status)
        self.contests.add_join_listener(self.leaderboard.on_join)
        self.price_feed.add_listener(self.leaderboard.on_prices)

        self.mirror: Optional[RedisPriceMirror] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self, background: Optional[bool] = None) -> None:
        """Create the schema, connect Redis and optionally start the loops."""
        await self.database.create_all()

        if self.settings.REDIS_URL:
            self.mirror = await RedisPriceMirror.connect(
                self.settings.REDIS_URL, ttl_seconds=self.settings.PRICE_CACHE_TTL_SECONDS
            )
            self.price_feed.mirror = self.mirror

        await self.sweep()

        if background is None:
            background = self.settings.BACKGROUND_TASKS_ENABLED
        if background:
            self._tasks = [
                asyncio.create_task(
                    self.price_feed.run(self.settings.PRICE_TICK_SECONDS), name="price-feed"
                ),
                asyncio.create_task(self._sweep_loop(), name="status-sweep"),
            ]
            logger.info("Background loops started")

    async def sweep(self) -> None:
        """Advance contest statuses and make sure every LIVE board is loaded."""
        async with self.database.session() as session:
            contests = await self.contests.sweep_statuses(session)
        for contest in contests:
            await self.leaderboard.sync_status(contest.id, contest.status)

    async def _sweep_loop(self) -> None:
        interval = self.settings.STATUS_SWEEP_SECONDS
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Status sweep failed")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.provider.close()
        if self.mirror is not None:
            await self.mirror.close()
            self.mirror = None
        await self.database.close()
        logger.info("Engine stopped")

    def health(self) -> Dict[str, Any]:
        return {
            "price_provider": self.provider.provider_name,
            "price_feed": "up" if self.running else "idle",
            "redis": "up" if self.mirror is not None else "disabled",
            "tracked_symbols": len(self.price_feed.interest()),
            "loaded_leaderboards": len(self.leaderboard.boards),
            "subscribers": self.hub.subscriber_count(),
        }
