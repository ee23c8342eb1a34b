"""
Trade Execution Service

Executes market orders for a contest participant against the latest price.

CRITICAL OPERATIONS:
1. Check membership and that the contest is LIVE
2. Price the order from the price feed
3. Serialize on the participant and apply the ledger change atomically
4. Append the transaction and publish the new snapshot to the leaderboard
"""

import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select

from contest_engine.core.context import RequestContext
from contest_engine.core.exceptions import (
    TradingWindowClosed,
    ValidationError,
)
from contest_engine.core.locks import LockArena
from contest_engine.models.contest import Contest, ContestStatus, Participant
from contest_engine.models.portfolio import Holding, PortfolioResponse
from contest_engine.models.trade import (
    TradeResult,
    Transaction,
    TransactionResponse,
    TransactionType,
)
from contest_engine.services import ledger
from contest_engine.services.contest_manager import ContestManager
from contest_engine.services.leaderboard import LeaderboardAggregator, LedgerSnapshot
from contest_engine.services.portfolio_calculator import PortfolioCalculator
from contest_engine.services.price_feed import PriceFeed

logger = logging.getLogger(__name__)


class TradeExecutor:
    def __init__(
        self,
        contests: ContestManager,
        price_feed: PriceFeed,
        leaderboard: LeaderboardAggregator,
        calculator: Optional[PortfolioCalculator] = None,
        lock_timeout: float = 5.0,
        row_locks: bool = False,
    ):
        self.contests = contests
        self.price_feed = price_feed
        self.leaderboard = leaderboard
        self.calculator = calculator or PortfolioCalculator()
        self.participant_locks = LockArena("participant", timeout=lock_timeout)
        self.row_locks = row_locks

    async def execute_transaction(
        self,
        ctx: RequestContext,
        contest_id: UUID,
        symbol: str,
        transaction_type: TransactionType,
        quantity: int,
    ) -> TradeResult:
        """
        Execute a BUY or SELL for the calling participant.

        Every rejection happens before anything is written, so a failed call
        leaves cash, holdings and the transaction log exactly as they were.
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive whole number of shares")
        side = TransactionType(transaction_type)
        stock_symbol = self.price_feed.normalize(symbol)

        session = ctx.session
        participant = await self.contests.get_participant(ctx, contest_id)
        contest = await self.contests.get_contest(ctx, contest_id)
        self._require_live(contest)

        price = await self.price_feed.get_price(stock_symbol)

        async with self.participant_locks.hold(participant.id):
            # Status may have moved while waiting for the lock or the quote,
            # including a cancellation committed by another session
            await session.refresh(contest)
            await self.contests.refresh_status(session, contest)
            self._require_live(contest)

            try:
                participant = await self._load_participant(ctx, participant.id)
                holding = await self._load_holding(ctx, participant.id, stock_symbol)
                position = (
                    ledger.Position(
                        quantity=holding.quantity,
                        average_buy_price=Decimal(holding.average_buy_price),
                        buy_value=Decimal(holding.buy_value),
                    )
                    if holding is not None
                    else ledger.Position.empty()
                )

                cash = Decimal(participant.cash_balance)
                if side == TransactionType.BUY:
                    change = ledger.apply_buy(cash, position, quantity, price)
                else:
                    change = ledger.apply_sell(cash, position, quantity, price)

                now = self.contests.clock()
                participant.cash_balance = change.cash_balance
                participant.updated_at = now
                await self._apply_position(ctx, participant.id, stock_symbol, holding, change.position, now)

                transaction = Transaction(
                    participant_id=participant.id,
                    contest_id=contest_id,
                    stock_symbol=stock_symbol,
                    transaction_type=side,
                    quantity=quantity,
                    execution_price=price,
                    total_value=change.trade_value,
                    timestamp=now,
                )
                session.add(transaction)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

            holdings = await self._holdings(ctx, participant.id)
            snapshot = LedgerSnapshot.from_rows(participant, holdings)
            try:
                await self.leaderboard.publish_snapshot(contest_id, snapshot)
            except Exception as e:
                # The trade is committed; the board catches up on its next load
                logger.error(f"Leaderboard update failed for contest {contest_id}: {e}")
                self.leaderboard.evict(contest_id)

        logger.info(
            f"{side.value} {quantity} {stock_symbol} @ {price} for participant "
            f"{participant.id} in contest {contest_id}"
        )
        portfolio = self._portfolio(participant, contest_id, holdings)
        return TradeResult(
            transaction=TransactionResponse.from_transaction(transaction),
            portfolio=portfolio,
        )

    def _require_live(self, contest: Contest) -> None:
        if contest.status != ContestStatus.LIVE:
            raise TradingWindowClosed(
                f"Trading is closed: contest is {contest.status.value}",
                details={"status": contest.status.value},
            )

    async def _load_participant(self, ctx: RequestContext, participant_id: UUID) -> Participant:
        stmt = select(Participant).where(Participant.id == participant_id)
        if self.row_locks:
            stmt = stmt.with_for_update()
        result = await ctx.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one()

    async def _load_holding(
        self, ctx: RequestContext, participant_id: UUID, stock_symbol: str
    ) -> Optional[Holding]:
        stmt = select(Holding).where(
            Holding.participant_id == participant_id,
            Holding.stock_symbol == stock_symbol,
        )
        if self.row_locks:
            stmt = stmt.with_for_update()
        result = await ctx.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _apply_position(
        self,
        ctx: RequestContext,
        participant_id: UUID,
        stock_symbol: str,
        holding: Optional[Holding],
        position: ledger.Position,
        now,
    ) -> None:
        """Upsert the holding row, or delete it once the position is closed."""
        if position.is_closed:
            if holding is not None:
                await ctx.session.delete(holding)
            return

        if holding is None:
            holding = Holding(participant_id=participant_id, stock_symbol=stock_symbol)
            ctx.session.add(holding)
        holding.quantity = position.quantity
        holding.average_buy_price = position.average_buy_price
        holding.buy_value = position.buy_value
        holding.updated_at = now

    async def _holdings(self, ctx: RequestContext, participant_id: UUID) -> List[Holding]:
        result = await ctx.session.execute(
            select(Holding)
            .where(Holding.participant_id == participant_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    def _portfolio(
        self, participant: Participant, contest_id: UUID, holdings: List[Holding]
    ) -> PortfolioResponse:
        valuation = self.calculator.value(
            participant.cash_balance, holdings, self.price_feed.latest_prices()
        )
        return self.calculator.to_response(
            valuation, participant.id, contest_id, as_of=self.contests.clock()
        )

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_portfolio(self, ctx: RequestContext, contest_id: UUID) -> PortfolioResponse:
        await self.contests.get_contest(ctx, contest_id)
        participant = await self.contests.get_participant(ctx, contest_id)
        holdings = await self._holdings(ctx, participant.id)
        return self._portfolio(participant, contest_id, holdings)

    async def list_transactions(
        self, ctx: RequestContext, contest_id: UUID
    ) -> List[TransactionResponse]:
        """Caller's trade history in this contest, newest first"""
        participant = await self.contests.get_participant(ctx, contest_id)
        result = await ctx.session.execute(
            select(Transaction)
            .where(Transaction.participant_id == participant.id)
            .order_by(Transaction.timestamp.desc())
        )
        return [TransactionResponse.from_transaction(tx) for tx in result.scalars().all()]
