"""
Leaderboard Aggregator

Holds, per contest, the latest committed ledger of every participant as an
immutable LedgerSnapshot. Ranking and revaluation only ever read snapshots,
so they never observe a trade half-applied.

Ordering: total portfolio value descending, then earlier join, then
participant id, which makes the order total and reproducible.
Subscribers receive one LeaderboardDelta per participant whose value moved
and re-sort locally with the same key.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select

from contest_engine.core.database import Database
from contest_engine.core.exceptions import ContestNotFound
from contest_engine.core.locks import LockArena
from contest_engine.core.websocket_manager import TopicHub
from contest_engine.models.common import ensure_utc
from contest_engine.models.contest import Contest, ContestStatus, Participant
from contest_engine.models.messages import LeaderboardDelta, contest_topic
from contest_engine.models.portfolio import Holding
from contest_engine.models.trade import LeaderboardEntry
from contest_engine.services.portfolio_calculator import PortfolioCalculator
from contest_engine.services.price_feed import PriceFeed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotHolding:
    stock_symbol: str
    quantity: int
    average_buy_price: Decimal
    buy_value: Decimal


@dataclass(frozen=True)
class LedgerSnapshot:
    """A participant's committed cash and holdings at one instant"""
    participant_id: UUID
    username: str
    joined_at: datetime
    cash_balance: Decimal
    holdings: Tuple[SnapshotHolding, ...] = ()

    @classmethod
    def from_rows(cls, participant: Participant, holdings: Iterable[Holding]) -> "LedgerSnapshot":
        return cls(
            participant_id=participant.id,
            username=participant.username,
            joined_at=ensure_utc(participant.joined_at),
            cash_balance=Decimal(participant.cash_balance),
            holdings=tuple(
                SnapshotHolding(
                    stock_symbol=h.stock_symbol,
                    quantity=h.quantity,
                    average_buy_price=Decimal(h.average_buy_price),
                    buy_value=Decimal(h.buy_value),
                )
                for h in holdings
                if h.quantity > 0
            ),
        )

    @property
    def symbols(self) -> frozenset:
        return frozenset(h.stock_symbol for h in self.holdings)


@dataclass
class ContestBoard:
    contest_id: UUID
    status: ContestStatus
    snapshots: Dict[UUID, LedgerSnapshot] = field(default_factory=dict)
    values: Dict[UUID, Decimal] = field(default_factory=dict)

    def symbols(self) -> frozenset:
        held: frozenset = frozenset()
        for snapshot in self.snapshots.values():
            held |= snapshot.symbols
        return held


def ranking_key(value: Decimal, joined_at: datetime, participant_id: UUID):
    return (-value, joined_at, str(participant_id))


class LeaderboardAggregator:
    def __init__(
        self,
        database: Database,
        price_feed: PriceFeed,
        hub: TopicHub,
        calculator: Optional[PortfolioCalculator] = None,
        lock_timeout: float = 5.0,
    ):
        self.database = database
        self.price_feed = price_feed
        self.hub = hub
        self.calculator = calculator or PortfolioCalculator()
        self.boards: Dict[UUID, ContestBoard] = {}
        self._hydration = LockArena("leaderboard", timeout=lock_timeout)

    # ── Loading ───────────────────────────────────────────────────────

    async def board(self, contest_id: UUID) -> ContestBoard:
        board = self.boards.get(contest_id)
        if board is not None:
            return board
        async with self._hydration.hold(contest_id):
            board = self.boards.get(contest_id)
            if board is None:
                board = await self._load(contest_id)
                self.boards[contest_id] = board
        return board

    async def _load(self, contest_id: UUID) -> ContestBoard:
        async with self.database.session() as session:
            contest = await session.get(Contest, contest_id)
            if contest is None:
                raise ContestNotFound(f"Contest {contest_id} not found")

            result = await session.execute(
                select(Participant).where(Participant.contest_id == contest_id)
            )
            participants = list(result.scalars().all())

            holdings_by_participant: Dict[UUID, List[Holding]] = {}
            if participants:
                result = await session.execute(
                    select(Holding).where(
                        Holding.participant_id.in_([p.id for p in participants])
                    )
                )
                for holding in result.scalars().all():
                    holdings_by_participant.setdefault(holding.participant_id, []).append(holding)

        board = ContestBoard(contest_id=contest_id, status=contest.status)
        prices = self.price_feed.latest_prices()
        for participant in participants:
            snapshot = LedgerSnapshot.from_rows(
                participant, holdings_by_participant.get(participant.id, [])
            )
            board.snapshots[participant.id] = snapshot
            board.values[participant.id] = self._value(snapshot, prices)

        self._sync_interest(board)
        logger.info(f"Leaderboard loaded for contest {contest_id} ({len(participants)} participants)")
        return board

    def _value(self, snapshot: LedgerSnapshot, prices: Dict[str, Decimal]) -> Decimal:
        return self.calculator.total_value(snapshot.cash_balance, snapshot.holdings, prices)

    def _sync_interest(self, board: ContestBoard) -> None:
        if board.status.is_active:
            self.price_feed.track(board.contest_id, board.symbols())
        else:
            self.price_feed.untrack(board.contest_id)

    # ── Reads ─────────────────────────────────────────────────────────

    async def ranking(self, contest_id: UUID) -> List[LeaderboardEntry]:
        board = await self.board(contest_id)
        ordered = sorted(
            board.snapshots.values(),
            key=lambda s: ranking_key(board.values[s.participant_id], s.joined_at, s.participant_id),
        )
        return [
            LeaderboardEntry(
                rank=rank,
                participant_id=snapshot.participant_id,
                username=snapshot.username,
                total_portfolio_value=board.values[snapshot.participant_id],
                joined_at=snapshot.joined_at,
            )
            for rank, snapshot in enumerate(ordered, start=1)
        ]

    # ── Updates ───────────────────────────────────────────────────────

    async def publish_snapshot(self, contest_id: UUID, snapshot: LedgerSnapshot) -> LeaderboardDelta:
        """
        Install a participant's freshly committed ledger and announce its value.
        Trades always announce, even when the value is unchanged.
        """
        board = await self.board(contest_id)
        board.snapshots[snapshot.participant_id] = snapshot
        value = self._value(snapshot, self.price_feed.latest_prices())
        board.values[snapshot.participant_id] = value
        self._sync_interest(board)
        return self._announce(contest_id, snapshot.participant_id, value)

    async def on_join(self, contest_id: UUID, participant: Participant) -> None:
        """Add a newly joined participant to a board that is already loaded."""
        try:
            # Waits out a hydration in flight, which may have missed this row
            async with self._hydration.hold(contest_id):
                board = self.boards.get(contest_id)
                if board is None or participant.id in board.snapshots:
                    return
                snapshot = LedgerSnapshot.from_rows(participant, [])
                board.snapshots[participant.id] = snapshot
                board.values[participant.id] = snapshot.cash_balance
        except Exception as e:
            logger.error(f"Leaderboard join update failed for contest {contest_id}: {e}")
            self.evict(contest_id)
            return
        self._announce(contest_id, participant.id, snapshot.cash_balance)

    def _announce(self, contest_id: UUID, participant_id: UUID, value: Decimal) -> LeaderboardDelta:
        topic = contest_topic(contest_id)
        delta = LeaderboardDelta(
            topic=topic,
            contest_id=contest_id,
            participant_id=participant_id,
            total_portfolio_value=value,
        )
        self.hub.publish(topic, delta)
        return delta

    async def on_prices(self, changed: Dict[str, Decimal]) -> List[LeaderboardDelta]:
        """Revalue participants of LIVE contests holding any changed symbol."""
        if not changed:
            return []
        touched = set(changed)
        prices = self.price_feed.latest_prices()
        deltas: List[LeaderboardDelta] = []

        for board in list(self.boards.values()):
            if board.status != ContestStatus.LIVE:
                continue
            for participant_id, snapshot in list(board.snapshots.items()):
                if not (snapshot.symbols & touched):
                    continue
                value = self._value(snapshot, prices)
                if value == board.values.get(participant_id):
                    continue
                board.values[participant_id] = value
                deltas.append(self._announce(board.contest_id, participant_id, value))

        if deltas:
            logger.debug(f"Price tick produced {len(deltas)} leaderboard deltas")
        return deltas

    async def sync_status(self, contest_id: UUID, status: ContestStatus) -> None:
        """
        Follow a contest's lifecycle.
        LIVE contests are loaded so ticks reach them; finished contests keep
        their final standings but stop reacting to prices.
        """
        if status == ContestStatus.LIVE:
            board = await self.board(contest_id)
        else:
            board = self.boards.get(contest_id)
            if board is None:
                return
        if board.status != status:
            board.status = status
            self._sync_interest(board)

    def evict(self, contest_id: UUID) -> None:
        if self.boards.pop(contest_id, None) is not None:
            self.price_feed.untrack(contest_id)
            logger.info(f"Leaderboard evicted for contest {contest_id}")
