"""Ledger Store service.

The ledger is the only writer of account balances:
- Every balance change is one ``LedgerEntry`` (tagged with its pool)
- ``Account`` balance columns are a materialization, re-derivable by replay
- Each entry carries a SHA-256 integrity hash for tamper detection

All methods flush but never commit; the caller owns the transaction.
"""

import hashlib
from collections.abc import Iterable
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from arena_economy.logging_config import get_logger
from arena_economy.models.account import Account
from arena_economy.models.ledger import (
    POSTED_STATUSES,
    STATUS_TRANSITIONS,
    BalancePool,
    LedgerEntry,
    LedgerKind,
    LedgerStatus,
)
from arena_economy.utils.errors import (
    ErrorCode,
    InsufficientFundsError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)

logger = get_logger(__name__)

_POOL_COLUMNS = {
    BalancePool.SPENDABLE: "spendable_balance",
    BalancePool.WITHDRAWABLE: "withdrawable_balance",
}


class LedgerService:
    """Append-only ledger with materialized per-pool balances."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # =========================================================================
    # Locking
    # =========================================================================

    async def lock_account(self, account_id: str) -> Account:
        """Load an account row with ``SELECT ... FOR UPDATE``.

        Raises:
            NotFoundError: If the account does not exist
        """
        result = await self.session.execute(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError(
                ErrorCode.ACCOUNT_NOT_FOUND,
                f"Account not found: {account_id}",
                details={"account_id": account_id},
            )
        return account

    async def lock_accounts(self, account_ids: Iterable[str]) -> dict[str, Account]:
        """Lock several accounts in sorted id order (deadlock-free)."""
        locked: dict[str, Account] = {}
        for account_id in sorted(set(account_ids)):
            locked[account_id] = await self.lock_account(account_id)
        return locked

    # =========================================================================
    # Posting
    # =========================================================================

    async def post(
        self,
        account: Account,
        kind: LedgerKind,
        pool: BalancePool,
        amount: int,
        *,
        status: LedgerStatus = LedgerStatus.COMPLETED,
        related_entity_id: str | None = None,
        description: str | None = None,
        reason: str | None = None,
        destination: str | None = None,
        external_ref: str | None = None,
    ) -> LedgerEntry:
        """Append one entry and move the matching pool.

        Args:
            account: Locked account row
            kind: What moved the money
            pool: Which pool moves
            amount: Signed amount (positive = credit, negative = debit)

        Returns:
            The flushed LedgerEntry

        Raises:
            ValidationError: If amount is zero
            InsufficientFundsError: If the pool would go negative
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValidationError(
                ErrorCode.INVALID_AMOUNT,
                f"Ledger amount must be a non-zero integer, got {amount!r}",
                details={"amount": amount},
            )

        column = _POOL_COLUMNS[pool]
        balance_before = getattr(account, column)
        moves_balance = status in POSTED_STATUSES
        balance_after = balance_before + amount if moves_balance else balance_before

        if balance_after < 0:
            raise InsufficientFundsError(
                pool=pool.value,
                required=abs(amount),
                available=balance_before,
            )

        entry = LedgerEntry(
            account_id=account.id,
            kind=kind,
            pool=pool,
            status=status,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            related_entity_id=related_entity_id,
            description=description,
            reason=reason,
            destination=destination,
            external_ref=external_ref,
            integrity_hash=self.compute_integrity_hash(
                account_id=account.id,
                kind=kind,
                pool=pool,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
            ),
        )
        setattr(account, column, balance_after)

        self.session.add(entry)
        await self.session.flush()

        logger.info(
            "ledger_entry_posted",
            entry_id=entry.id,
            account_id=account.id,
            kind=kind.value,
            pool=pool.value,
            status=status.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
        )
        return entry

    async def transition(self, entry: LedgerEntry, new_status: LedgerStatus) -> LedgerEntry:
        """Move an entry along its only legal status path (pending -> completed|rejected)."""
        allowed = STATUS_TRANSITIONS[entry.status]
        if new_status not in allowed:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                f"Ledger entry cannot move from {entry.status.value} to {new_status.value}",
                details={
                    "entry_id": entry.id,
                    "status": entry.status.value,
                    "requested": new_status.value,
                },
            )
        entry.status = new_status
        await self.session.flush()
        return entry

    # =========================================================================
    # Replay & verification
    # =========================================================================

    async def replay_balances(self, account_id: str) -> dict[str, int]:
        """Recompute both pools from posted ledger entries."""
        result = await self.session.execute(
            select(LedgerEntry.pool, func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(
                LedgerEntry.account_id == account_id,
                LedgerEntry.status.in_(POSTED_STATUSES),
            )
            .group_by(LedgerEntry.pool)
        )
        balances = {pool.value: 0 for pool in BalancePool}
        for pool, total in result.all():
            balances[pool.value] = int(total)
        return balances

    async def verify_account(self, account_id: str) -> dict[str, Any]:
        """Compare materialized balances with a full ledger replay."""
        account = await self.session.get(Account, account_id, populate_existing=True)
        if account is None:
            raise NotFoundError(
                ErrorCode.ACCOUNT_NOT_FOUND,
                f"Account not found: {account_id}",
                details={"account_id": account_id},
            )

        replayed = await self.replay_balances(account_id)
        materialized = {
            BalancePool.SPENDABLE.value: account.spendable_balance,
            BalancePool.WITHDRAWABLE.value: account.withdrawable_balance,
        }
        drift = {
            pool: materialized[pool] - replayed[pool]
            for pool in materialized
            if materialized[pool] != replayed[pool]
        }
        if drift:
            logger.warning("ledger_drift_detected", account_id=account_id, drift=drift)

        return {
            "account_id": account_id,
            "materialized": materialized,
            "replayed": replayed,
            "drift": drift,
            "consistent": not drift,
        }

    async def history(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        kind: LedgerKind | None = None,
    ) -> list[LedgerEntry]:
        """Account ledger, newest first."""
        query = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.created_at.desc())
            .offset(offset)
            .limit(limit)
        )

        if kind:
            query = query.where(LedgerEntry.kind == kind)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    def compute_integrity_hash(
        account_id: str,
        kind: LedgerKind,
        pool: BalancePool,
        amount: int,
        balance_before: int,
        balance_after: int,
    ) -> str:
        """Compute SHA-256 integrity hash for an entry."""
        data = f"{account_id}:{kind.value}:{pool.value}:{amount}:{balance_before}:{balance_after}"
        return hashlib.sha256(data.encode()).hexdigest()

    @staticmethod
    def verify_integrity(entry: LedgerEntry) -> bool:
        """Verify entry integrity hash."""
        expected = LedgerService.compute_integrity_hash(
            account_id=entry.account_id,
            kind=entry.kind,
            pool=entry.pool,
            amount=entry.amount,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
        )
        return entry.integrity_hash == expected
