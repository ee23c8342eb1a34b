"""
FastAPI dependencies
Builds the per-request context: verified caller, database session, engine.
"""

from typing import AsyncIterator, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from contest_engine.core.context import RequestContext
from contest_engine.core.exceptions import SessionExpired
from contest_engine.core.security import AuthenticatedUser, decode_token
from contest_engine.services.engine import ContestEngine

bearer_scheme = HTTPBearer(auto_error=False)


def get_engine(request: Request) -> ContestEngine:
    return request.app.state.engine


async def get_session(engine: ContestEngine = Depends(get_engine)) -> AsyncIterator[AsyncSession]:
    async with engine.database.session() as session:
        yield session


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    engine: ContestEngine = Depends(get_engine),
) -> AuthenticatedUser:
    """Verify the bearer token issued by the auth service."""
    if credentials is None:
        raise SessionExpired("Missing bearer token")
    return decode_token(
        credentials.credentials,
        engine.settings.jwt_secret,
        engine.settings.JWT_ALGORITHM,
    )


async def get_context(
    user: AuthenticatedUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    engine: ContestEngine = Depends(get_engine),
) -> RequestContext:
    return RequestContext(user=user, session=session, engine=engine)
