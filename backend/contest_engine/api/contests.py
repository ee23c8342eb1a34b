"""
Contest API routes
Lobby listings, creation, joining, portfolio, leaderboard and trading.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Request

from contest_engine.core.context import RequestContext
from contest_engine.core.dependencies import get_context
from contest_engine.core.security import limiter, trade_rate_limit
from contest_engine.models.contest import (
    Contest,
    ContestCreate,
    ContestResponse,
    JoinByCodeRequest,
    JoinRequest,
    ParticipantResponse,
)
from contest_engine.models.portfolio import PortfolioResponse
from contest_engine.models.trade import (
    LeaderboardEntry,
    TradeResult,
    TransactionRequest,
    TransactionResponse,
)

router = APIRouter()


def _contest_view(ctx: RequestContext, contest: Contest) -> ContestResponse:
    # Invite codes are only ever shown to the creator
    return ContestResponse.from_contest(
        contest, include_invite_code=contest.creator_id == ctx.user_id
    )


# ============================================================================
# LOBBY
# ============================================================================

@router.get("/my-contests", response_model=List[ContestResponse])
async def my_contests(ctx: RequestContext = Depends(get_context)):
    """Contests the caller created or joined, newest first."""
    contests = await ctx.engine.contests.list_my_contests(ctx)
    return [_contest_view(ctx, c) for c in contests]


@router.get("/open-public-contests", response_model=List[ContestResponse])
async def open_public_contests(ctx: RequestContext = Depends(get_context)):
    contests = await ctx.engine.contests.list_open_public_contests(ctx)
    return [_contest_view(ctx, c) for c in contests]


@router.get("/details/{contest_id}", response_model=ContestResponse)
async def contest_details(contest_id: UUID, ctx: RequestContext = Depends(get_context)):
    contest = await ctx.engine.contests.get_contest(ctx, contest_id)
    return _contest_view(ctx, contest)


@router.post("/create", response_model=ContestResponse, status_code=201)
async def create_contest(data: ContestCreate, ctx: RequestContext = Depends(get_context)):
    contest = await ctx.engine.contests.create_contest(ctx, data)
    return _contest_view(ctx, contest)


# ============================================================================
# MEMBERSHIP
# ============================================================================

@router.post("/join", response_model=ParticipantResponse)
async def join_contest(data: JoinRequest, ctx: RequestContext = Depends(get_context)):
    participant = await ctx.engine.contests.join_contest(ctx, data.contest_id)
    return ParticipantResponse.from_participant(participant)


@router.post("/join-by-code", response_model=ParticipantResponse)
async def join_by_code(data: JoinByCodeRequest, ctx: RequestContext = Depends(get_context)):
    participant = await ctx.engine.contests.join_by_code(ctx, data.invite_code)
    return ParticipantResponse.from_participant(participant)


@router.post("/{contest_id}/cancel", response_model=ContestResponse)
async def cancel_contest(contest_id: UUID, ctx: RequestContext = Depends(get_context)):
    contest = await ctx.engine.contests.cancel_contest(ctx, contest_id)
    return _contest_view(ctx, contest)


# ============================================================================
# PORTFOLIO / LEADERBOARD
# ============================================================================

@router.get("/{contest_id}/portfolio", response_model=PortfolioResponse)
async def get_portfolio(contest_id: UUID, ctx: RequestContext = Depends(get_context)):
    """Caller's cash, holdings and P&L valued at the latest prices."""
    return await ctx.engine.trades.get_portfolio(ctx, contest_id)


@router.get("/{contest_id}/leaderboard", response_model=List[LeaderboardEntry])
async def get_leaderboard(contest_id: UUID, ctx: RequestContext = Depends(get_context)):
    await ctx.engine.contests.get_contest(ctx, contest_id)
    return await ctx.engine.leaderboard.ranking(contest_id)


# ============================================================================
# TRADING
# ============================================================================

@router.post("/{contest_id}/transactions", response_model=TradeResult, status_code=201)
@limiter.limit(trade_rate_limit)
async def place_transaction(
    request: Request,
    contest_id: UUID,
    data: TransactionRequest,
    ctx: RequestContext = Depends(get_context),
):
    """Execute a market BUY or SELL at the latest price."""
    return await ctx.engine.trades.execute_transaction(
        ctx,
        contest_id,
        data.stock_symbol,
        data.transaction_type,
        data.quantity,
    )


@router.get("/{contest_id}/transactions", response_model=List[TransactionResponse])
async def list_transactions(contest_id: UUID, ctx: RequestContext = Depends(get_context)):
    return await ctx.engine.trades.list_transactions(ctx, contest_id)
