"""
Security helpers: bearer-token verification, rate limiting, response headers.

Tokens are issued and refreshed by the external auth service; this service
only verifies them.
"""

from dataclasses import dataclass
from typing import Dict
import logging

import jwt
from slowapi import Limiter
from slowapi.util import get_remote_address

from contest_engine.core.exceptions import SessionExpired

logger = logging.getLogger(__name__)


limiter = Limiter(key_func=get_remote_address)

_limits: Dict[str, str] = {"trades": "30/minute"}


def configure_limits(trades: str) -> None:
    """Set the limits applied by the app currently being built."""
    _limits["trades"] = trades


def trade_rate_limit() -> str:
    # Evaluated per request by slowapi
    return _limits["trades"]


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity extracted from a verified bearer token"""
    user_id: str
    username: str


def decode_token(token: str, secret: str, algorithm: str) -> AuthenticatedUser:
    """
    Verify a JWT and return the caller identity.

    Raises SessionExpired for any invalid, expired or incomplete token.
    """
    if not token:
        raise SessionExpired("Missing bearer token")
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise SessionExpired("Session expired, please log in again")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Rejected bearer token: {e}")
        raise SessionExpired("Invalid authentication token")

    if payload.get("type") not in (None, "access"):
        raise SessionExpired("Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise SessionExpired("Token has no subject")

    username = payload.get("username") or payload.get("preferred_username") or str(user_id)
    return AuthenticatedUser(user_id=str(user_id), username=str(username))


def get_security_headers() -> Dict[str, str]:
    return {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Cache-Control": "no-store",
    }
