"""
Contest models: Contest, Participant
Maps to: contests, participants tables
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import Field as PydanticField
from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from contest_engine.models.common import (
    CamelModel,
    Money,
    ensure_utc,
    money_column,
    timestamp_column,
    utcnow,
)


# ============================================================================
# ENUMS
# ============================================================================

class ContestStatus(str, Enum):
    OPEN = "OPEN"
    LIVE = "LIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ContestStatus.COMPLETED, ContestStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (ContestStatus.OPEN, ContestStatus.LIVE)


# ============================================================================
# CONTEST MODEL
# ============================================================================

class Contest(SQLModel, table=True):
    """Time-boxed trading competition with a fixed starting budget"""
    __tablename__ = "contests"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(index=True, max_length=200)
    creator_id: str = Field(index=True, max_length=128)
    is_private: bool = Field(default=False)
    invite_code: Optional[str] = Field(default=None, index=True, max_length=32)

    virtual_budget: Decimal = Field(sa_column=money_column())
    max_participants: int = Field(ge=1)
    current_participants: int = Field(default=0, ge=0)

    start_time: datetime = Field(sa_column=timestamp_column())
    end_time: datetime = Field(sa_column=timestamp_column())
    status: ContestStatus = Field(default=ContestStatus.OPEN, index=True)

    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


# ============================================================================
# PARTICIPANT MODEL
# ============================================================================

class Participant(SQLModel, table=True):
    """A user's membership and cash ledger within one contest"""
    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("contest_id", "user_id", name="uniq_participant_contest_user"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    contest_id: UUID = Field(foreign_key="contests.id", index=True)
    user_id: str = Field(index=True, max_length=128)
    username: str = Field(max_length=150)

    cash_balance: Decimal = Field(sa_column=money_column())

    joined_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class ContestCreate(CamelModel):
    """Contest creation request"""
    name: str = PydanticField(min_length=1, max_length=200)
    is_private: bool = False
    start_time: datetime
    end_time: datetime
    virtual_budget: Decimal = PydanticField(gt=0, max_digits=20, decimal_places=6)
    max_participants: int = PydanticField(ge=1, le=10000)


class JoinRequest(CamelModel):
    contest_id: UUID


class JoinByCodeRequest(CamelModel):
    invite_code: str = PydanticField(min_length=1, max_length=32)


class ContestResponse(CamelModel):
    id: UUID
    name: str
    creator_id: str
    is_private: bool
    invite_code: Optional[str] = None
    virtual_budget: Money
    max_participants: int
    current_participants: int
    start_time: datetime
    end_time: datetime
    status: ContestStatus
    created_at: datetime

    @classmethod
    def from_contest(cls, contest: Contest, include_invite_code: bool = False) -> "ContestResponse":
        return cls(
            id=contest.id,
            name=contest.name,
            creator_id=contest.creator_id,
            is_private=contest.is_private,
            invite_code=contest.invite_code if include_invite_code else None,
            virtual_budget=contest.virtual_budget,
            max_participants=contest.max_participants,
            current_participants=contest.current_participants,
            start_time=ensure_utc(contest.start_time),
            end_time=ensure_utc(contest.end_time),
            status=contest.status,
            created_at=ensure_utc(contest.created_at),
        )


class ParticipantResponse(CamelModel):
    id: UUID
    contest_id: UUID
    user_id: str
    username: str
    cash_balance: Money
    joined_at: datetime

    @classmethod
    def from_participant(cls, participant: Participant) -> "ParticipantResponse":
        return cls(
            id=participant.id,
            contest_id=participant.contest_id,
            user_id=participant.user_id,
            username=participant.username,
            cash_balance=participant.cash_balance,
            joined_at=ensure_utc(participant.joined_at),
        )
