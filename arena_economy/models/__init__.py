"""Database models."""

from arena_economy.models.account import Account
from arena_economy.models.audit import AuditLog, DomainEvent
from arena_economy.models.base import Base, TimestampMixin, UUIDMixin
from arena_economy.models.competition import (
    Competition,
    CompetitionMode,
    CompetitionParticipant,
    CompetitionStatus,
    Registration,
)
from arena_economy.models.knockout import (
    BracketPhase,
    KnockoutRoom,
    KnockoutTeam,
    KnockoutTournament,
    RoomAssignment,
    RoomStatus,
)
from arena_economy.models.ledger import (
    POSTED_STATUSES,
    BalancePool,
    LedgerEntry,
    LedgerKind,
    LedgerStatus,
)

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    # Wallet
    "Account",
    "LedgerEntry",
    "LedgerKind",
    "LedgerStatus",
    "BalancePool",
    "POSTED_STATUSES",
    # Competitions
    "Competition",
    "CompetitionMode",
    "CompetitionStatus",
    "CompetitionParticipant",
    "Registration",
    # Knockout
    "BracketPhase",
    "KnockoutTournament",
    "KnockoutTeam",
    "KnockoutRoom",
    "RoomAssignment",
    "RoomStatus",
    # Audit
    "AuditLog",
    "DomainEvent",
]
