"""Tests for trade execution against a LIVE contest."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import ALICE, BOB
from contest_engine.core.exceptions import (
    InsufficientFunds,
    InsufficientHoldings,
    OperationTimeout,
    ParticipantNotFound,
    PriceUnavailable,
    TradingWindowClosed,
    ValidationError,
)
from contest_engine.models.portfolio import Holding
from contest_engine.models.trade import Transaction, TransactionType


async def _count(engine, model):
    async with engine.database.session() as session:
        return await session.scalar(select(func.count()).select_from(model))


@pytest.fixture
def live_contest(make_contest, clock):
    async def _live(**kwargs):
        contest = await make_contest(**kwargs)
        clock.advance(hours=1, minutes=1)
        return contest

    return _live


@pytest.mark.asyncio
async def test_buy_then_sell_scenario(live_contest, trade, provider, engine):
    contest = await live_contest()

    bought = await trade(ALICE, contest.id, "BUY", "RELIANCE", 10)
    assert bought.transaction.stock_symbol == "RELIANCE.NS"
    assert bought.transaction.execution_price == Decimal("500")
    assert bought.portfolio.cash_balance == Decimal("95000")
    [holding] = bought.portfolio.holdings
    assert holding.quantity == 10
    assert holding.average_buy_price == Decimal("500")
    assert holding.buy_value == Decimal("5000")

    provider.set_price("RELIANCE.NS", "600")
    await engine.price_feed.tick()

    sold = await trade(ALICE, contest.id, "SELL", "RELIANCE.NS", 4)
    assert sold.transaction.total_value == Decimal("2400")
    assert sold.portfolio.cash_balance == Decimal("97400")
    [holding] = sold.portfolio.holdings
    assert holding.quantity == 6
    assert holding.buy_value == Decimal("3000")
    assert holding.average_buy_price == Decimal("500")
    assert sold.portfolio.total_portfolio_value == Decimal("97400") + 6 * Decimal("600")


@pytest.mark.asyncio
async def test_trading_while_open_is_rejected(make_contest, trade, portfolio, engine):
    contest = await make_contest()

    with pytest.raises(TradingWindowClosed):
        await trade(ALICE, contest.id, "BUY", "RELIANCE", 10)

    state = await portfolio(ALICE, contest.id)
    assert state.cash_balance == Decimal("100000")
    assert state.holdings == []
    assert await _count(engine, Transaction) == 0


@pytest.mark.asyncio
async def test_trading_after_end_is_rejected(live_contest, trade, clock):
    contest = await live_contest()
    clock.advance(hours=6)
    with pytest.raises(TradingWindowClosed):
        await trade(ALICE, contest.id, "BUY", "RELIANCE", 1)


@pytest.mark.asyncio
async def test_non_participant_cannot_trade(live_contest, trade):
    contest = await live_contest()
    with pytest.raises(ParticipantNotFound):
        await trade(BOB, contest.id, "BUY", "RELIANCE", 1)


@pytest.mark.asyncio
async def test_unpriced_symbol_is_rejected_without_changes(live_contest, trade, engine):
    contest = await live_contest()
    with pytest.raises(PriceUnavailable) as exc:
        await trade(ALICE, contest.id, "BUY", "UNKNOWN", 1)
    assert exc.value.retryable
    assert await _count(engine, Transaction) == 0


@pytest.mark.asyncio
async def test_failing_upstream_surfaces_as_price_unavailable(live_contest, trade, provider):
    contest = await live_contest()
    provider.failing.add("TCS.NS")
    with pytest.raises(PriceUnavailable):
        await trade(ALICE, contest.id, "BUY", "TCS", 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -3])
async def test_bad_quantity_is_rejected(live_contest, trade, quantity):
    contest = await live_contest()
    with pytest.raises(ValidationError):
        await trade(ALICE, contest.id, "BUY", "RELIANCE", quantity)


@pytest.mark.asyncio
async def test_bad_symbol_is_rejected(live_contest, trade):
    contest = await live_contest()
    with pytest.raises(ValidationError):
        await trade(ALICE, contest.id, "BUY", "../etc", 1)


@pytest.mark.asyncio
async def test_insufficient_funds_leaves_ledger_unchanged(live_contest, trade, portfolio, engine):
    contest = await live_contest(budget="4000")
    with pytest.raises(InsufficientFunds):
        await trade(ALICE, contest.id, "BUY", "RELIANCE", 10)

    state = await portfolio(ALICE, contest.id)
    assert state.cash_balance == Decimal("4000")
    assert await _count(engine, Holding) == 0


@pytest.mark.asyncio
async def test_oversell_leaves_ledger_unchanged(live_contest, trade, portfolio):
    contest = await live_contest()
    await trade(ALICE, contest.id, "BUY", "RELIANCE", 5)

    with pytest.raises(InsufficientHoldings):
        await trade(ALICE, contest.id, "SELL", "RELIANCE", 6)

    state = await portfolio(ALICE, contest.id)
    assert state.cash_balance == Decimal("97500")
    assert state.holdings[0].quantity == 5


@pytest.mark.asyncio
async def test_selling_whole_position_removes_holding(live_contest, trade, engine):
    contest = await live_contest()
    await trade(ALICE, contest.id, "BUY", "INFY", 4)
    result = await trade(ALICE, contest.id, "SELL", "INFY", 4)

    assert result.portfolio.holdings == []
    assert result.portfolio.cash_balance == Decimal("100000")
    assert await _count(engine, Holding) == 0
    assert await _count(engine, Transaction) == 2


@pytest.mark.asyncio
async def test_concurrent_buys_are_serialized(live_contest, trade, portfolio):
    contest = await live_contest(budget="20000")

    results = await asyncio.gather(
        *(trade(ALICE, contest.id, "BUY", "RELIANCE", 10) for _ in range(5)),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientFunds)

    state = await portfolio(ALICE, contest.id)
    assert state.cash_balance == Decimal("0")
    assert state.holdings[0].quantity == 40
    assert state.holdings[0].buy_value == Decimal("20000")


@pytest.mark.asyncio
async def test_lock_wait_is_bounded(live_contest, trade, engine, open_ctx):
    contest = await live_contest()
    async with open_ctx(ALICE) as ctx:
        participant = await engine.contests.get_participant(ctx, contest.id)

    engine.trades.participant_locks.timeout = 0.05
    async with engine.trades.participant_locks.hold(participant.id):
        with pytest.raises(OperationTimeout) as exc:
            await trade(ALICE, contest.id, "BUY", "RELIANCE", 1)
    assert exc.value.retryable
    assert await _count(engine, Transaction) == 0


@pytest.mark.asyncio
async def test_transaction_history_newest_first(live_contest, trade, engine, open_ctx, clock):
    contest = await live_contest()
    await trade(ALICE, contest.id, "BUY", "RELIANCE", 2)
    clock.advance(seconds=10)
    await trade(ALICE, contest.id, "SELL", "RELIANCE", 1)

    async with open_ctx(ALICE) as ctx:
        history = await engine.trades.list_transactions(ctx, contest.id)

    assert [t.transaction_type for t in history] == [TransactionType.SELL, TransactionType.BUY]
    assert history[1].timestamp < history[0].timestamp


@pytest.mark.asyncio
async def test_cancellation_during_quote_fetch_rejects_trade(
    live_contest, trade, portfolio, engine, open_ctx, provider, monkeypatch
):
    contest = await live_contest()
    fetching, release = asyncio.Event(), asyncio.Event()
    real_fetch = provider.fetch_quote

    async def held_fetch(symbol):
        fetching.set()
        await release.wait()
        return await real_fetch(symbol)

    monkeypatch.setattr(provider, "fetch_quote", held_fetch)

    pending = asyncio.create_task(trade(ALICE, contest.id, "BUY", "RELIANCE", 10))
    await fetching.wait()
    async with open_ctx(ALICE) as ctx:
        await engine.contests.cancel_contest(ctx, contest.id)
    release.set()

    with pytest.raises(TradingWindowClosed):
        await pending

    state = await portfolio(ALICE, contest.id)
    assert state.cash_balance == Decimal("100000")
    assert state.holdings == []
    assert await _count(engine, Transaction) == 0


@pytest.mark.asyncio
async def test_leaderboard_failure_does_not_undo_committed_trade(
    live_contest, trade, engine, monkeypatch
):
    contest = await live_contest()
    await engine.leaderboard.ranking(contest.id)

    async def broken(contest_id, snapshot):
        raise RuntimeError("database went away")

    monkeypatch.setattr(engine.leaderboard, "publish_snapshot", broken)

    result = await trade(ALICE, contest.id, "BUY", "RELIANCE", 2)

    assert result.portfolio.cash_balance == Decimal("99000")
    assert await _count(engine, Transaction) == 1
    assert contest.id not in engine.leaderboard.boards
