"""Competition, Registration and participant models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from arena_economy.models.base import Base, TimestampMixin, UUIDMixin


class CompetitionMode(str, Enum):
    """Team size of a competition."""

    SOLO = "solo"
    DUO = "duo"
    SQUAD = "squad"

    @property
    def team_size(self) -> int:
        return {"solo": 1, "duo": 2, "squad": 4}[self.value]

    @property
    def is_team(self) -> bool:
        return self is not CompetitionMode.SOLO


class CompetitionStatus(str, Enum):
    """Competition lifecycle states."""

    UPCOMING = "upcoming"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Competition(Base, UUIDMixin, TimestampMixin):
    """A scheduled, fixed-size, fixed-start contest with an entry fee."""

    __tablename__ = "competitions"

    organizer_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    game: Mapped[str] = mapped_column(String(50), nullable=False, default="BGMI")

    mode: Mapped[CompetitionMode] = mapped_column(
        SQLEnum(CompetitionMode, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    status: Mapped[CompetitionStatus] = mapped_column(
        SQLEnum(CompetitionStatus, values_callable=lambda e: [m.value for m in e]),
        default=CompetitionStatus.UPCOMING,
        nullable=False,
        index=True,
    )

    # Size and money
    capacity: Mapped[int] = mapped_column(nullable=False, comment="Maximum participants (players)")
    joined_count: Mapped[int] = mapped_column(default=0, nullable=False)
    entry_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    estimated_prize_pool: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Display estimate assuming full capacity",
    )
    current_prize_pool: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Escrowed prize pool from actual joins",
    )
    prize_distribution: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    """
    Rank -> amount (keys are stringified ranks):
    {"1": 400, "2": 250, "3": 150}
    """

    # Schedule
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Match room handed to players before start
    match_room_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    match_room_password: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Settlement
    pool_locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the prize pool was recalculated from actual joins",
    )
    winner_declared_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    total_prize_paid: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Cancellation
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    registrations: Mapped[list["Registration"]] = relationship(
        "Registration",
        back_populates="competition",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("joined_count <= capacity", name="ck_competitions_capacity"),
        CheckConstraint("current_prize_pool >= 0", name="ck_competitions_pool_non_negative"),
    )

    @property
    def is_full(self) -> bool:
        return self.joined_count >= self.capacity

    @property
    def slots_left(self) -> int:
        return max(0, self.capacity - self.joined_count)

    def prize_for_rank(self, rank: int) -> int | None:
        value = (self.prize_distribution or {}).get(str(rank))
        return int(value) if value is not None else None

    def __repr__(self) -> str:
        return f"<Competition {self.title} ({self.status.value}) {self.joined_count}/{self.capacity}>"


class Registration(Base, UUIDMixin, TimestampMixin):
    """Links a participant (or a team led by ``account_id``) to a competition."""

    __tablename__ = "registrations"

    competition_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("competitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Payer; team leader for duo/squad
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    team_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount_paid: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_entry_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("ledger_entries.id", ondelete="SET NULL"),
        nullable=True,
    )

    competition: Mapped["Competition"] = relationship("Competition", back_populates="registrations")
    participants: Mapped[list["CompetitionParticipant"]] = relationship(
        "CompetitionParticipant",
        back_populates="registration",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("competition_id", "team_name", name="uq_registrations_team_name"),
    )

    @property
    def member_ids(self) -> list[str]:
        """Leader first, then teammates."""
        members = sorted(
            self.participants,
            key=lambda p: (p.account_id != self.account_id, p.account_id),
        )
        return [p.account_id for p in members]

    def __repr__(self) -> str:
        return f"<Registration {self.id[:8]}... competition={self.competition_id[:8]}... team={self.team_name}>"


class CompetitionParticipant(Base, UUIDMixin):
    """One row per joined player; the unique key makes double-join impossible."""

    __tablename__ = "competition_participants"

    competition_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("competitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    registration_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("registrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    registration: Mapped["Registration"] = relationship("Registration", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("competition_id", "account_id", name="uq_participants_competition_account"),
    )
