"""Withdrawal workflow.

A withdrawal request is a ``withdrawal`` ledger entry:
- pending: funds debited from the withdrawable pool and held
- completed: an administrator attests the external payment was sent
- rejected: hold reversed by a compensating ``refund`` entry

The debit at request time is what prevents the same funds from being
withdrawn twice; there is no separate locked-balance tracking.
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from arena_economy.actor import Actor
from arena_economy.config import EconomyRules
from arena_economy.logging_config import get_logger
from arena_economy.models.ledger import BalancePool, LedgerEntry, LedgerKind, LedgerStatus
from arena_economy.services.events import EventRecorder
from arena_economy.services.ledger import LedgerService
from arena_economy.utils.errors import (
    AuthorizationError,
    ErrorCode,
    NotFoundError,
    StateConflictError,
    ValidationError,
    require_positive,
    require_reason,
)
from arena_economy.utils.timeutil import utcnow

logger = get_logger(__name__)


class WithdrawalService:
    """Request, approve and reject cash-outs."""

    def __init__(
        self,
        session: AsyncSession,
        rules: EconomyRules,
        ledger: LedgerService | None = None,
        events: EventRecorder | None = None,
    ) -> None:
        self.session = session
        self.rules = rules
        self.ledger = ledger or LedgerService(session)
        self.events = events or EventRecorder(session)

    async def request(
        self,
        account_id: str,
        amount: int,
        destination: str,
    ) -> LedgerEntry:
        """Hold ``amount`` from the withdrawable pool.

        Raises:
            ValidationError: Bad amount, below minimum, missing destination
            AuthorizationError: Account frozen or banned
            InsufficientFundsError: Withdrawable balance too low
        """
        require_positive(amount)
        if amount < self.rules.min_withdrawal:
            raise ValidationError(
                ErrorCode.BELOW_MINIMUM_WITHDRAWAL,
                f"Minimum withdrawal is {self.rules.min_withdrawal:,}",
                details={"amount": amount, "minimum": self.rules.min_withdrawal},
            )
        if not destination or not destination.strip():
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Payout destination is required",
                details={"field": "destination"},
            )

        account = await self.ledger.lock_account(account_id)
        self._check_flags(account.is_frozen, account.is_banned, account_id, AuthorizationError)

        entry = await self.ledger.post(
            account,
            LedgerKind.WITHDRAWAL,
            BalancePool.WITHDRAWABLE,
            -amount,
            status=LedgerStatus.PENDING,
            destination=destination.strip(),
            description=f"Withdrawal request: {amount:,}",
        )

        logger.info(
            "withdrawal_requested",
            withdrawal_id=entry.id,
            account_id=account_id,
            amount=amount,
            withdrawable_after=entry.balance_after,
        )
        return entry

    async def approve(
        self,
        actor: Actor,
        withdrawal_id: str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> LedgerEntry:
        """Confirm the external payment was sent. No balance change.

        The account's flags are re-checked under the row lock: a frozen or
        banned account's hold stays pending.
        """
        actor.require_admin()
        now = now or utcnow()

        entry = await self._lock_pending(withdrawal_id)
        account = await self.ledger.lock_account(entry.account_id)
        self._check_flags(account.is_frozen, account.is_banned, account.id, StateConflictError)

        await self.ledger.transition(entry, LedgerStatus.COMPLETED)
        entry.processed_at = now
        if note:
            entry.reason = note.strip()
        await self.session.flush()

        logger.info(
            "withdrawal_approved",
            withdrawal_id=entry.id,
            account_id=entry.account_id,
            amount=-entry.amount,
            approved_by=actor.account_id,
        )
        return entry

    async def reject(
        self,
        actor: Actor,
        withdrawal_id: str,
        reason: str | None,
        now: datetime | None = None,
    ) -> LedgerEntry:
        """Reverse the hold with a compensating refund entry.

        Returns:
            The refund entry
        """
        actor.require_admin()
        reason = require_reason(reason)
        now = now or utcnow()

        entry = await self._lock_pending(withdrawal_id)
        account = await self.ledger.lock_account(entry.account_id)

        await self.ledger.transition(entry, LedgerStatus.REJECTED)
        entry.processed_at = now
        entry.reason = reason

        refund = await self.ledger.post(
            account,
            LedgerKind.REFUND,
            BalancePool.WITHDRAWABLE,
            -entry.amount,
            related_entity_id=entry.id,
            reason=reason,
            description="Withdrawal rejected: hold released",
        )

        await self.events.record(
            "withdrawal.rejected",
            aggregate_id=entry.id,
            recipient_ids=[entry.account_id],
            payload={"amount": -entry.amount, "reason": reason},
        )

        logger.info(
            "withdrawal_rejected",
            withdrawal_id=entry.id,
            account_id=entry.account_id,
            amount=-entry.amount,
            rejected_by=actor.account_id,
            account_frozen=account.is_frozen,
            account_banned=account.is_banned,
        )
        return refund

    async def pending_requests(self, *, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        """Withdrawal queue, oldest first."""
        result = await self.session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.kind == LedgerKind.WITHDRAWAL,
                LedgerEntry.status == LedgerStatus.PENDING,
            )
            .order_by(LedgerEntry.created_at)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _lock_pending(self, withdrawal_id: str) -> LedgerEntry:
        result = await self.session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.id == withdrawal_id,
                LedgerEntry.kind == LedgerKind.WITHDRAWAL,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError(
                ErrorCode.WITHDRAWAL_NOT_FOUND,
                f"Withdrawal request not found: {withdrawal_id}",
                details={"withdrawal_id": withdrawal_id},
            )
        if entry.status is not LedgerStatus.PENDING:
            raise StateConflictError(
                ErrorCode.WITHDRAWAL_NOT_PENDING,
                f"Withdrawal request is already {entry.status.value}",
                details={"withdrawal_id": withdrawal_id, "status": entry.status.value},
            )
        return entry

    @staticmethod
    def _check_flags(frozen: bool, banned: bool, account_id: str, error_cls: type) -> None:
        if banned:
            raise error_cls(
                ErrorCode.ACCOUNT_BANNED,
                "Account is banned",
                details={"account_id": account_id},
            )
        if frozen:
            raise error_cls(
                ErrorCode.ACCOUNT_FROZEN,
                "Account is frozen",
                details={"account_id": account_id},
            )
