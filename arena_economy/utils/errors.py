"""Custom exception classes for economy engine errors.

Provides structured error handling with an error kind, a fine-grained error
code and a user-facing message. The procedure layer turns these into
``{"success": False, "error": {...}}`` payloads.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Top-level error taxonomy reported to callers."""

    VALIDATION = "ValidationError"
    CAPACITY = "CapacityError"
    STATE_CONFLICT = "StateConflictError"
    INSUFFICIENT_FUNDS = "InsufficientFundsError"
    AUTHORIZATION = "AuthorizationError"
    TIMING = "TimingError"
    NOT_FOUND = "NotFoundError"
    INTERNAL = "InternalError"


class ErrorCode(str, Enum):
    """Fine-grained error codes."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    MISSING_REASON = "MISSING_REASON"
    FORBIDDEN = "FORBIDDEN"
    NOT_OWNER = "NOT_OWNER"

    # Account errors
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ACCOUNT_EXISTS = "ACCOUNT_EXISTS"
    ACCOUNT_FROZEN = "ACCOUNT_FROZEN"
    ACCOUNT_BANNED = "ACCOUNT_BANNED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    BELOW_MINIMUM_WITHDRAWAL = "BELOW_MINIMUM_WITHDRAWAL"

    # Competition errors
    COMPETITION_NOT_FOUND = "COMPETITION_NOT_FOUND"
    COMPETITION_FULL = "COMPETITION_FULL"
    ALREADY_JOINED = "ALREADY_JOINED"
    NOT_REGISTERED = "NOT_REGISTERED"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_TEAM = "INVALID_TEAM"
    TEAM_EXIT_NOT_ALLOWED = "TEAM_EXIT_NOT_ALLOWED"
    JOIN_CLOSED = "JOIN_CLOSED"
    EXIT_CLOSED = "EXIT_CLOSED"
    NOT_STARTED_YET = "NOT_STARTED_YET"
    MATCH_CREDENTIALS_MISSING = "MATCH_CREDENTIALS_MISSING"

    # Settlement errors
    WINNERS_ALREADY_DECLARED = "WINNERS_ALREADY_DECLARED"
    DISPUTE_WINDOW_OPEN = "DISPUTE_WINDOW_OPEN"
    PRIZE_OVER_ALLOCATION = "PRIZE_OVER_ALLOCATION"
    UNKNOWN_RANK = "UNKNOWN_RANK"

    # Withdrawal errors
    WITHDRAWAL_NOT_FOUND = "WITHDRAWAL_NOT_FOUND"
    WITHDRAWAL_NOT_PENDING = "WITHDRAWAL_NOT_PENDING"

    # Knockout errors
    TOURNAMENT_NOT_FOUND = "TOURNAMENT_NOT_FOUND"
    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    TEAM_NOT_FOUND = "TEAM_NOT_FOUND"
    TOURNAMENT_FULL = "TOURNAMENT_FULL"
    ROUND_OUT_OF_ORDER = "ROUND_OUT_OF_ORDER"
    ROUND_INCOMPLETE = "ROUND_INCOMPLETE"
    NO_ACTIVE_TEAMS = "NO_ACTIVE_TEAMS"
    ROOM_CREDENTIALS_MISSING = "ROOM_CREDENTIALS_MISSING"
    ROOM_WINNER_ALREADY_SET = "ROOM_WINNER_ALREADY_SET"
    TEAM_NOT_IN_ROOM = "TEAM_NOT_IN_ROOM"
    TEAM_ELIMINATED = "TEAM_ELIMINATED"
    TEAM_ALREADY_ADVANCED = "TEAM_ALREADY_ADVANCED"
    PRIZES_ALREADY_DISTRIBUTED = "PRIZES_ALREADY_DISTRIBUTED"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"


class EngineError(Exception):
    """Base exception for economy engine errors.

    Attributes:
        kind: Error taxonomy bucket
        code: Error code for programmatic handling
        message: User-friendly error message
        details: Additional error details
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code if isinstance(code, str) else code.value
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(EngineError):
    """Malformed input, rejected before any state is touched."""

    kind = ErrorKind.VALIDATION


class CapacityError(EngineError):
    """Competition, tournament or room is full."""

    kind = ErrorKind.CAPACITY


class StateConflictError(EngineError):
    """Operation is invalid for the entity's current status."""

    kind = ErrorKind.STATE_CONFLICT


class InsufficientFundsError(EngineError):
    """Raised when a balance pool cannot cover a debit."""

    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, pool: str, required: int, available: int):
        super().__init__(
            code=ErrorCode.INSUFFICIENT_BALANCE,
            message=(
                f"Insufficient {pool} balance: required {required}, "
                f"available {available}"
            ),
            details={"pool": pool, "required": required, "available": available},
        )


class AuthorizationError(EngineError):
    """Caller does not own or administer the target resource."""

    kind = ErrorKind.AUTHORIZATION


class TimingError(EngineError):
    """A cutoff or dispute window is not satisfied yet."""

    kind = ErrorKind.TIMING


class NotFoundError(EngineError):
    """Referenced entity does not exist."""

    kind = ErrorKind.NOT_FOUND


def require_reason(reason: str | None, field: str = "reason") -> str:
    """Return a stripped justification string or raise ValidationError."""
    if reason is None or not reason.strip():
        raise ValidationError(
            ErrorCode.MISSING_REASON,
            f"A non-empty {field} is required",
            details={"field": field},
        )
    return reason.strip()


def require_positive(amount: int, field: str = "amount") -> int:
    """Reject zero, negative or non-integer money amounts."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            ErrorCode.INVALID_AMOUNT,
            f"Invalid {field}: {amount!r} (must be a positive integer)",
            details={"field": field, "amount": amount},
        )
    return amount
