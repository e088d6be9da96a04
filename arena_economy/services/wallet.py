"""Wallet Accessor service.

Balance reads, privileged adjustments, deposit crediting and account flags.
Every money movement goes through ``LedgerService.post``.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from arena_economy.actor import Actor
from arena_economy.models.account import Account
from arena_economy.models.ledger import BalancePool, LedgerEntry, LedgerKind
from arena_economy.services.ledger import LedgerService
from arena_economy.utils.errors import (
    ErrorCode,
    NotFoundError,
    StateConflictError,
    ValidationError,
    require_positive,
    require_reason,
)

logger = logging.getLogger(__name__)


class WalletService:
    """Wallet service for two-pool account balances."""

    def __init__(self, session: AsyncSession, ledger: LedgerService | None = None) -> None:
        self.session = session
        self.ledger = ledger or LedgerService(session)

    async def open_account(self, nickname: str, account_id: str | None = None) -> Account:
        """Create an account with zero balances."""
        if not nickname or not nickname.strip():
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Nickname is required",
                details={"field": "nickname"},
            )

        if account_id is not None and await self.session.get(Account, account_id) is not None:
            raise StateConflictError(
                ErrorCode.ACCOUNT_EXISTS,
                f"Account already exists: {account_id}",
                details={"account_id": account_id},
            )

        account = Account(nickname=nickname.strip())
        if account_id is not None:
            account.id = account_id
        self.session.add(account)
        await self.session.flush()

        logger.info(f"Account opened: id={account.id[:8]}... nickname={account.nickname}")
        return account

    async def get_balances(self, account_id: str) -> dict[str, int]:
        """Get both pools. Pure read.

        Returns:
            {"spendable": int, "withdrawable": int}
        """
        account = await self.session.get(Account, account_id)
        if account is None:
            raise NotFoundError(
                ErrorCode.ACCOUNT_NOT_FOUND,
                f"Account not found: {account_id}",
                details={"account_id": account_id},
            )
        return {
            "spendable": account.spendable_balance,
            "withdrawable": account.withdrawable_balance,
        }

    async def adjust(
        self,
        actor: Actor,
        account_id: str,
        delta: int,
        pool: BalancePool,
        reason: str | None,
    ) -> LedgerEntry:
        """Administrator credit/debit of one pool.

        Args:
            actor: Caller (must be an administrator)
            account_id: Target account
            delta: Signed amount (positive = credit, negative = debit)
            pool: Pool to adjust
            reason: Mandatory audit justification

        Raises:
            AuthorizationError: If caller is not an administrator
            ValidationError: On zero delta or missing reason
            InsufficientFundsError: If the pool would go negative
        """
        actor.require_admin()
        reason = require_reason(reason)
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValidationError(
                ErrorCode.INVALID_AMOUNT,
                f"Adjustment must be a non-zero integer, got {delta!r}",
                details={"delta": delta},
            )

        account = await self.ledger.lock_account(account_id)
        kind = LedgerKind.ADMIN_CREDIT if delta > 0 else LedgerKind.ADMIN_DEBIT

        entry = await self.ledger.post(
            account,
            kind,
            pool,
            delta,
            reason=reason,
            description=f"Admin adjustment: {delta:+,} ({pool.value})",
        )

        logger.info(
            f"Balance adjusted: account={account_id[:8]}... pool={pool.value} "
            f"delta={delta:+,} by={actor.account_id}"
        )
        return entry

    async def credit_deposit(
        self,
        account_id: str,
        amount: int,
        external_ref: str,
        description: str | None = None,
    ) -> tuple[LedgerEntry, bool]:
        """Credit a confirmed payment to the spendable pool.

        Idempotent on ``external_ref``: a replayed gateway callback returns the
        original entry instead of crediting twice.

        Returns:
            (entry, created)
        """
        require_positive(amount)
        if not external_ref or not external_ref.strip():
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "external_ref is required for deposits",
                details={"field": "external_ref"},
            )

        account = await self.ledger.lock_account(account_id)

        result = await self.session.execute(
            select(LedgerEntry).where(LedgerEntry.external_ref == external_ref)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            if existing.account_id != account_id or existing.amount != amount:
                raise StateConflictError(
                    ErrorCode.INVALID_REQUEST,
                    "external_ref already used for a different deposit",
                    details={"external_ref": external_ref},
                )
            logger.info(f"Duplicate deposit ignored: ref={external_ref}")
            return existing, False

        entry = await self.ledger.post(
            account,
            LedgerKind.DEPOSIT,
            BalancePool.SPENDABLE,
            amount,
            external_ref=external_ref,
            description=description or f"Deposit: {amount:,}",
        )
        return entry, True

    async def set_flags(
        self,
        actor: Actor,
        account_id: str,
        *,
        frozen: bool | None = None,
        banned: bool | None = None,
        reason: str | None = None,
    ) -> Account:
        """Freeze/unfreeze or ban/unban an account (administrator only)."""
        actor.require_admin()
        reason = require_reason(reason)
        if frozen is None and banned is None:
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Nothing to change: pass frozen and/or banned",
            )

        account = await self.ledger.lock_account(account_id)
        if frozen is not None:
            account.is_frozen = frozen
        if banned is not None:
            account.is_banned = banned
        await self.session.flush()

        logger.info(
            f"Account flags set: account={account_id[:8]}... "
            f"frozen={account.is_frozen} banned={account.is_banned} by={actor.account_id}"
        )
        return account
