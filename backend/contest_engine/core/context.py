"""
Per-request context handed to every engine operation.
Handlers never reach for module-level state; who is calling, which database
session to use and which engine instance serves them all travel here.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

from contest_engine.core.security import AuthenticatedUser

if TYPE_CHECKING:
    from contest_engine.services.engine import ContestEngine


@dataclass
class RequestContext:
    user: AuthenticatedUser
    session: AsyncSession
    engine: "ContestEngine"

    @property
    def user_id(self) -> str:
        return self.user.user_id

    def now(self) -> datetime:
        return self.engine.clock()
