"""Ledger models.

One append-only ledger with a pool discriminant:
- LedgerKind: what moved the money
- BalancePool: which wallet pool moved (spendable / withdrawable)
- LedgerStatus: settlement status (only pending -> completed|rejected transitions)
- LedgerEntry: the immutable record itself
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, DateTime, Enum as SQLEnum, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from arena_economy.models.base import Base, TimestampMixin, UUIDMixin


class LedgerKind(str, Enum):
    """Balance-affecting event types."""

    DEPOSIT = "deposit"
    ENTRY_FEE = "entry_fee"
    REFUND = "refund"
    PRIZE = "prize"
    WITHDRAWAL = "withdrawal"
    ADMIN_CREDIT = "admin_credit"
    ADMIN_DEBIT = "admin_debit"
    COMMISSION = "commission"
    PRIZE_FUNDING = "prize_funding"


class BalancePool(str, Enum):
    """Wallet pools. The two pools never cross."""

    SPENDABLE = "spendable"
    WITHDRAWABLE = "withdrawable"


class LedgerStatus(str, Enum):
    """Ledger entry status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


# Statuses whose amount has moved the balance. A rejected withdrawal keeps its
# debit and is compensated by a separate refund entry.
POSTED_STATUSES = (
    LedgerStatus.PENDING,
    LedgerStatus.COMPLETED,
    LedgerStatus.REJECTED,
)

# Legal status transitions after creation
STATUS_TRANSITIONS: dict[LedgerStatus, frozenset[LedgerStatus]] = {
    LedgerStatus.PENDING: frozenset({LedgerStatus.COMPLETED, LedgerStatus.REJECTED}),
    LedgerStatus.COMPLETED: frozenset(),
    LedgerStatus.FAILED: frozenset(),
    LedgerStatus.REJECTED: frozenset(),
}


class LedgerEntry(Base, UUIDMixin, TimestampMixin):
    """Ledger entry with full audit trail.

    Every balance change corresponds to exactly one entry. Entries are never
    deleted and never edited except for the status column.
    """

    __tablename__ = "ledger_entries"

    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    kind: Mapped[LedgerKind] = mapped_column(
        SQLEnum(LedgerKind, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True,
    )
    pool: Mapped[BalancePool] = mapped_column(
        SQLEnum(BalancePool, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    status: Mapped[LedgerStatus] = mapped_column(
        SQLEnum(LedgerStatus, values_callable=lambda e: [m.value for m in e]),
        default=LedgerStatus.COMPLETED,
        nullable=False,
        index=True,
    )

    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Signed amount (+credit/-debit) applied to the pool",
    )
    balance_before: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Pool balance before this entry",
    )
    balance_after: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Pool balance after this entry",
    )

    # Competition, registration, withdrawal entry, ... this entry belongs to
    related_entity_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        index=True,
    )

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Admin justification / rejection reason",
    )

    # Withdrawal specific
    destination: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
        comment="Payout destination (UPI id, bank reference)",
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Deposit specific
    external_ref: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
        comment="Payment gateway reference (deposit idempotency)",
    )

    integrity_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 hash for tamper detection",
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry {self.id[:8]}... kind={self.kind.value} "
            f"pool={self.pool.value} amount={self.amount:+} status={self.status.value}>"
        )
