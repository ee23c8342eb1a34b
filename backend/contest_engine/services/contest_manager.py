"""
Contest State Machine

Lifecycle: OPEN (accepting joins) -> LIVE (trading) -> COMPLETED, with
CANCELLED reachable from OPEN or LIVE by the creator.

The stored status is advanced lazily on every read and by a periodic sweep.
Both go through refresh_status, which only ever moves a contest forward with
a conditional UPDATE, so whichever runs first wins and nothing regresses.
"""

import logging
import secrets
from datetime import datetime
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from contest_engine.core.context import RequestContext
from contest_engine.core.exceptions import (
    AlreadyJoined,
    ContestEngineError,
    ContestFull,
    ContestNotFound,
    ContestNotJoinable,
    InvalidInviteCode,
    NotContestCreator,
    ParticipantNotFound,
    ValidationError,
)
from contest_engine.core.locks import LockArena
from contest_engine.models.common import Clock, ensure_utc, utcnow
from contest_engine.models.contest import (
    Contest,
    ContestCreate,
    ContestStatus,
    Participant,
)

logger = logging.getLogger(__name__)

# No 0/O or 1/I so codes survive being read aloud
INVITE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
INVITE_ATTEMPTS = 20

ACTIVE_STATUSES = (ContestStatus.OPEN, ContestStatus.LIVE)
_ORDER = {
    ContestStatus.OPEN: 0,
    ContestStatus.LIVE: 1,
    ContestStatus.COMPLETED: 2,
}

StatusListener = Callable[[UUID, ContestStatus], Awaitable[None]]
JoinListener = Callable[[UUID, Participant], Awaitable[None]]


def time_status(contest: Contest, now: datetime) -> ContestStatus:
    if now < ensure_utc(contest.start_time):
        return ContestStatus.OPEN
    if now < ensure_utc(contest.end_time):
        return ContestStatus.LIVE
    return ContestStatus.COMPLETED


def effective_status(contest: Contest, now: datetime) -> ContestStatus:
    """
    Status a contest should have at ``now``.

    Terminal statuses stick. Otherwise the later of the stored and the
    time-derived status wins, so a contest never moves backwards.
    """
    stored = ContestStatus(contest.status)
    if stored.is_terminal:
        return stored
    derived = time_status(contest, now)
    return derived if _ORDER[derived] > _ORDER[stored] else stored


def generate_invite_code(length: int = 8) -> str:
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(length))


class ContestManager:
    def __init__(
        self,
        clock: Clock = utcnow,
        lock_timeout: float = 5.0,
        invite_code_length: int = 8,
    ):
        self.clock = clock
        self.invite_code_length = invite_code_length
        self.join_locks = LockArena("contest join", timeout=lock_timeout)
        self._listeners: List[StatusListener] = []
        self._join_listeners: List[JoinListener] = []

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def add_join_listener(self, listener: JoinListener) -> None:
        self._join_listeners.append(listener)

    async def _notify(self, contest_id: UUID, status: ContestStatus) -> None:
        for listener in self._listeners:
            await listener(contest_id, status)

    # ── Status ────────────────────────────────────────────────────────

    async def refresh_status(self, session: AsyncSession, contest: Contest) -> Contest:
        """Persist the effective status if it moved; returns the refreshed contest."""
        target = effective_status(contest, self.clock())
        current = ContestStatus(contest.status)
        if target == current:
            return contest

        moved = await self._transition(session, contest, (current,), target)
        if moved:
            logger.info(f"Contest {contest.id} transitioned {current.value} -> {target.value}")
            await self._notify(contest.id, target)
            return contest
        # Lost the race to another writer; re-evaluate from what it stored
        return await self.refresh_status(session, contest)

    async def _transition(
        self,
        session: AsyncSession,
        contest: Contest,
        expected: tuple,
        target: ContestStatus,
    ) -> bool:
        try:
            result = await session.execute(
                update(Contest)
                .where(Contest.id == contest.id, Contest.status.in_(expected))
                .values(status=target, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        await session.refresh(contest)
        return result.rowcount == 1

    async def sweep_statuses(self, session: AsyncSession) -> List[Contest]:
        """Advance every active contest; returns the contests still active or just finished."""
        result = await session.execute(
            select(Contest).where(Contest.status.in_(ACTIVE_STATUSES))
        )
        contests = list(result.scalars().all())
        for contest in contests:
            await self.refresh_status(session, contest)
        return contests

    # ── Lookups ───────────────────────────────────────────────────────

    async def get_contest(self, ctx: RequestContext, contest_id: UUID) -> Contest:
        contest = await ctx.session.get(Contest, contest_id)
        if contest is None:
            raise ContestNotFound(f"Contest {contest_id} not found")
        return await self.refresh_status(ctx.session, contest)

    async def get_participant(self, ctx: RequestContext, contest_id: UUID) -> Participant:
        result = await ctx.session.execute(
            select(Participant).where(
                Participant.contest_id == contest_id,
                Participant.user_id == ctx.user_id,
            )
        )
        participant = result.scalar_one_or_none()
        if participant is None:
            raise ParticipantNotFound("You have not joined this contest")
        return participant

    async def list_my_contests(self, ctx: RequestContext) -> List[Contest]:
        joined = select(Participant.contest_id).where(Participant.user_id == ctx.user_id)
        result = await ctx.session.execute(
            select(Contest)
            .where(or_(Contest.creator_id == ctx.user_id, Contest.id.in_(joined)))
            .order_by(Contest.start_time.desc())
        )
        contests = list(result.scalars().all())
        for contest in contests:
            await self.refresh_status(ctx.session, contest)
        return contests

    async def list_open_public_contests(self, ctx: RequestContext) -> List[Contest]:
        result = await ctx.session.execute(
            select(Contest)
            .where(Contest.is_private.is_(False), Contest.status == ContestStatus.OPEN)
            .order_by(Contest.start_time.asc())
        )
        contests = []
        for contest in result.scalars().all():
            await self.refresh_status(ctx.session, contest)
            if contest.status == ContestStatus.OPEN:
                contests.append(contest)
        return contests

    # ── Create ────────────────────────────────────────────────────────

    def _validate(self, data: ContestCreate) -> tuple:
        name = data.name.strip()
        if not name or len(name) > 200:
            raise ValidationError("Contest name must be 1-200 characters")
        start = ensure_utc(data.start_time)
        end = ensure_utc(data.end_time)
        if end <= start:
            raise ValidationError("End time must be after start time")
        if end <= self.clock():
            raise ValidationError("End time must be in the future")
        if data.virtual_budget <= 0:
            raise ValidationError("Virtual budget must be positive")
        if data.max_participants < 1:
            raise ValidationError("A contest needs room for at least one participant")
        return name, start, end

    async def _unique_invite_code(self, session: AsyncSession) -> str:
        for _ in range(INVITE_ATTEMPTS):
            code = generate_invite_code(self.invite_code_length)
            result = await session.execute(
                select(Contest.id).where(
                    Contest.invite_code == code,
                    Contest.status.in_(ACTIVE_STATUSES),
                )
            )
            if result.first() is None:
                return code
        raise ContestEngineError("Could not allocate an invite code; please retry")

    async def create_contest(self, ctx: RequestContext, data: ContestCreate) -> Contest:
        """
        Create a contest and enrol its creator as the first participant.
        Private contests get an invite code unique among active contests.
        """
        name, start, end = self._validate(data)
        session = ctx.session
        now = self.clock()

        invite_code = await self._unique_invite_code(session) if data.is_private else None
        contest = Contest(
            name=name,
            creator_id=ctx.user_id,
            is_private=data.is_private,
            invite_code=invite_code,
            virtual_budget=data.virtual_budget,
            max_participants=data.max_participants,
            current_participants=1,
            start_time=start,
            end_time=end,
            created_at=now,
            updated_at=now,
        )
        contest.status = effective_status(contest, now)
        creator = Participant(
            contest_id=contest.id,
            user_id=ctx.user_id,
            username=ctx.user.username,
            cash_balance=data.virtual_budget,
            joined_at=now,
            updated_at=now,
        )
        try:
            session.add(contest)
            await session.flush()
            session.add(creator)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(
            f"Contest {contest.id} created by {ctx.user_id} "
            f"({'private' if contest.is_private else 'public'}, {contest.status.value})"
        )
        if contest.status == ContestStatus.LIVE:
            await self._notify(contest.id, contest.status)
        return contest

    # ── Join ──────────────────────────────────────────────────────────

    async def join_contest(self, ctx: RequestContext, contest_id: UUID) -> Participant:
        contest = await ctx.session.get(Contest, contest_id)
        if contest is None:
            raise ContestNotFound(f"Contest {contest_id} not found")
        if contest.is_private:
            raise InvalidInviteCode("This contest is private; join it with its invite code")
        return await self._join(ctx, contest)

    async def join_by_code(self, ctx: RequestContext, invite_code: str) -> Participant:
        code = (invite_code or "").strip().upper()
        if not code:
            raise InvalidInviteCode("Invite code is required")

        result = await ctx.session.execute(
            select(Contest)
            .where(Contest.invite_code == code, Contest.is_private.is_(True))
            .order_by(Contest.created_at.desc())
        )
        matches = list(result.scalars().all())
        if not matches:
            raise InvalidInviteCode("Invalid invite code")

        contest: Optional[Contest] = next(
            (c for c in matches if ContestStatus(c.status).is_active), matches[0]
        )
        return await self._join(ctx, contest)

    async def _join(self, ctx: RequestContext, contest: Contest) -> Participant:
        session = ctx.session
        async with self.join_locks.hold(contest.id):
            await session.refresh(contest)
            await self.refresh_status(session, contest)

            if contest.status != ContestStatus.OPEN:
                raise ContestNotJoinable(
                    f"Contest is {contest.status.value} and no longer accepting participants"
                )

            result = await session.execute(
                select(Participant.id).where(
                    Participant.contest_id == contest.id,
                    Participant.user_id == ctx.user_id,
                )
            )
            if result.first() is not None:
                raise AlreadyJoined("You have already joined this contest")

            if contest.current_participants >= contest.max_participants:
                raise ContestFull("Contest is full")

            now = self.clock()
            try:
                claimed = await session.execute(
                    update(Contest)
                    .where(
                        Contest.id == contest.id,
                        Contest.status == ContestStatus.OPEN,
                        Contest.current_participants < Contest.max_participants,
                    )
                    .values(
                        current_participants=Contest.current_participants + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    raise ContestFull("Contest is full")

                participant = Participant(
                    contest_id=contest.id,
                    user_id=ctx.user_id,
                    username=ctx.user.username,
                    cash_balance=contest.virtual_budget,
                    joined_at=now,
                    updated_at=now,
                )
                session.add(participant)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise AlreadyJoined("You have already joined this contest")
            except Exception:
                await session.rollback()
                raise

            await session.refresh(contest)
            for listener in self._join_listeners:
                await listener(contest.id, participant)

        logger.info(
            f"User {ctx.user_id} joined contest {contest.id} "
            f"({contest.current_participants}/{contest.max_participants})"
        )
        return participant

    # ── Cancel ────────────────────────────────────────────────────────

    async def cancel_contest(self, ctx: RequestContext, contest_id: UUID) -> Contest:
        contest = await self.get_contest(ctx, contest_id)
        if contest.creator_id != ctx.user_id:
            raise NotContestCreator("Only the contest creator can cancel it")

        if not ContestStatus(contest.status).is_active:
            raise ContestNotJoinable(f"Contest is already {contest.status.value}")

        moved = await self._transition(ctx.session, contest, ACTIVE_STATUSES, ContestStatus.CANCELLED)
        if not moved:
            raise ContestNotJoinable(f"Contest is already {contest.status.value}")

        logger.info(f"Contest {contest.id} cancelled by {ctx.user_id}")
        await self._notify(contest.id, ContestStatus.CANCELLED)
        return contest
