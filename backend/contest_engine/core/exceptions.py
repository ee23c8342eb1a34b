"""
Domain exceptions for the contest engine.

Every error a caller can trigger derives from ContestEngineError and carries
the HTTP status, a stable machine-readable code and whether retrying the same
request may succeed. The API layer renders them as
``{"message", "code", "retryable"}``.
"""

from typing import Any, Dict, Optional


class ContestEngineError(Exception):
    """Base exception for contest engine failures"""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ContestEngineError):
    """Malformed input (quantity, time range, symbol); rejected before any state change"""
    status_code = 400
    code = "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

class ContestNotFound(ContestEngineError):
    status_code = 404
    code = "CONTEST_NOT_FOUND"


class ParticipantNotFound(ContestEngineError):
    """Caller has not joined the contest"""
    status_code = 404
    code = "PARTICIPANT_NOT_FOUND"


class NotContestCreator(ContestEngineError):
    status_code = 403
    code = "NOT_CONTEST_CREATOR"


# ---------------------------------------------------------------------------
# Join-time
# ---------------------------------------------------------------------------

class ContestNotJoinable(ContestEngineError):
    status_code = 409
    code = "CONTEST_NOT_JOINABLE"


class ContestFull(ContestEngineError):
    status_code = 409
    code = "CONTEST_FULL"


class InvalidInviteCode(ContestEngineError):
    status_code = 400
    code = "INVALID_INVITE_CODE"


class AlreadyJoined(ContestEngineError):
    status_code = 409
    code = "ALREADY_JOINED"


# ---------------------------------------------------------------------------
# Trade-time
# ---------------------------------------------------------------------------

class InsufficientFunds(ContestEngineError):
    status_code = 400
    code = "INSUFFICIENT_FUNDS"


class InsufficientHoldings(ContestEngineError):
    status_code = 400
    code = "INSUFFICIENT_HOLDINGS"


class TradingWindowClosed(ContestEngineError):
    """Contest is not LIVE"""
    status_code = 409
    code = "TRADING_WINDOW_CLOSED"


class PriceUnavailable(ContestEngineError):
    """No fresh quote for the symbol"""
    status_code = 503
    code = "PRICE_UNAVAILABLE"
    retryable = True


class OperationTimeout(ContestEngineError):
    """A bounded wait (lock, upstream call) expired"""
    status_code = 503
    code = "OPERATION_TIMEOUT"
    retryable = True


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class SessionExpired(ContestEngineError):
    """Bearer token missing, invalid or expired; caller must re-authenticate"""
    status_code = 401
    code = "SESSION_EXPIRED"
