"""Account model."""

from sqlalchemy import BigInteger, CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column

from arena_economy.models.base import Base, TimestampMixin, UUIDMixin


class Account(Base, UUIDMixin, TimestampMixin):
    """One wallet per user.

    Both balance columns are a materialization of the ledger for O(1) reads.
    They are only ever written by ``LedgerService.post`` and can always be
    re-derived by replaying ``ledger_entries``.
    """

    __tablename__ = "accounts"

    nickname: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )

    # Entry-fee pool: deposits, refunds, admin credits
    spendable_balance: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Usable only for entry fees",
    )

    # Cash-out pool: prizes and commissions only
    withdrawable_balance: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Cash-out eligible, sourced from prizes and commissions",
    )

    is_frozen: Mapped[bool] = mapped_column(default=False, nullable=False)
    is_banned: Mapped[bool] = mapped_column(default=False, nullable=False)

    __table_args__ = (
        CheckConstraint("spendable_balance >= 0", name="ck_accounts_spendable_non_negative"),
        CheckConstraint("withdrawable_balance >= 0", name="ck_accounts_withdrawable_non_negative"),
    )

    @property
    def is_restricted(self) -> bool:
        return self.is_frozen or self.is_banned

    def __repr__(self) -> str:
        return f"<Account {self.nickname} spendable={self.spendable_balance} withdrawable={self.withdrawable_balance}>"
