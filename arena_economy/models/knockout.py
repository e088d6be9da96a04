"""Knockout bracket models (multi-round, room-based tournaments)."""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from arena_economy.models.base import Base, TimestampMixin, UUIDMixin


class BracketPhase(str, Enum):
    """Tournament lifecycle phases. ``current_round`` carries the round number."""

    REGISTRATION = "registration"
    IN_ROUND = "in_round"
    FINALE = "finale"
    COMPLETED = "completed"


class RoomStatus(str, Enum):
    """Room status."""

    WAITING = "waiting"  # Created, no credentials
    CREDENTIALS_SET = "credentials_set"  # Live: id/password handed out
    COMPLETED = "completed"  # Winner recorded


class KnockoutTournament(Base, UUIDMixin, TimestampMixin):
    """Large multi-round school-style tournament."""

    __tablename__ = "knockout_tournaments"

    organizer_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    game: Mapped[str] = mapped_column(String(50), nullable=False)
    max_players: Mapped[int] = mapped_column(nullable=False)
    teams_per_room: Mapped[int] = mapped_column(nullable=False)
    total_rounds: Mapped[int] = mapped_column(nullable=False, default=1)

    phase: Mapped[BracketPhase] = mapped_column(
        SQLEnum(BracketPhase, values_callable=lambda e: [m.value for m in e]),
        default=BracketPhase.REGISTRATION,
        nullable=False,
        index=True,
    )
    current_round: Mapped[int] = mapped_column(default=0, nullable=False)
    registered_players: Mapped[int] = mapped_column(default=0, nullable=False)

    tournament_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Prize payout by final rank, once
    prizes_distributed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_prize_paid: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    @property
    def status_label(self) -> str:
        """``registration``, ``round_N``, ``finale`` or ``completed``."""
        if self.phase is BracketPhase.IN_ROUND:
            return f"round_{self.current_round}"
        return self.phase.value

    def __repr__(self) -> str:
        return f"<KnockoutTournament {self.name} ({self.status_label})>"


class KnockoutTeam(Base, UUIDMixin, TimestampMixin):
    """Team of 1-4 players.

    ``current_round`` is the last round the team has won (0 after registration).
    """

    __tablename__ = "knockout_teams"

    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("knockout_tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    leader_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    member_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    current_round: Mapped[int] = mapped_column(default=0, nullable=False)
    is_eliminated: Mapped[bool] = mapped_column(default=False, nullable=False, index=True)
    eliminated_in_round: Mapped[int | None] = mapped_column(nullable=True)
    forfeited: Mapped[bool] = mapped_column(default=False, nullable=False)
    final_rank: Mapped[int | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("tournament_id", "name", name="uq_knockout_teams_name"),
    )

    def __repr__(self) -> str:
        state = "eliminated" if self.is_eliminated else f"round={self.current_round}"
        return f"<KnockoutTeam {self.name} {state}>"


class KnockoutRoom(Base, UUIDMixin, TimestampMixin):
    """One lobby of a round; exactly one winner advances."""

    __tablename__ = "knockout_rooms"

    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("knockout_tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    round_number: Mapped[int] = mapped_column(nullable=False)
    room_number: Mapped[int] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    scheduled_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Credentials
    room_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    room_password: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[RoomStatus] = mapped_column(
        SQLEnum(RoomStatus, values_callable=lambda e: [m.value for m in e]),
        default=RoomStatus.WAITING,
        nullable=False,
    )
    winner_team_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("knockout_teams.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("tournament_id", "round_number", "room_number", name="uq_knockout_rooms_slot"),
    )

    def __repr__(self) -> str:
        return f"<KnockoutRoom {self.name} ({self.status.value})>"


class RoomAssignment(Base, UUIDMixin):
    """Team-to-room link. A team sits in exactly one room per round."""

    __tablename__ = "room_assignments"

    tournament_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("knockout_tournaments.id", ondelete="CASCADE"),
        nullable=False,
    )
    round_number: Mapped[int] = mapped_column(nullable=False)
    room_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("knockout_rooms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    team_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("knockout_teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slot_number: Mapped[int] = mapped_column(nullable=False)
    is_winner: Mapped[bool] = mapped_column(default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("tournament_id", "round_number", "team_id", name="uq_assignments_team_round"),
        UniqueConstraint("room_id", "team_id", name="uq_assignments_room_team"),
    )
