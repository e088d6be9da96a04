"""Cancellation & bulk refund.

Every registration is refunded its exact ``amount_paid`` inside one
transaction; a failure on any participant rolls back every refund.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from arena_economy.actor import Actor
from arena_economy.config import EconomyRules
from arena_economy.logging_config import get_logger
from arena_economy.models.competition import Competition, CompetitionStatus
from arena_economy.models.ledger import BalancePool, LedgerKind
from arena_economy.services.entry import load_registrations, lock_competition
from arena_economy.services.events import EventRecorder
from arena_economy.services.ledger import LedgerService
from arena_economy.utils.errors import ErrorCode, StateConflictError, require_reason
from arena_economy.utils.timeutil import as_utc, utcnow

logger = get_logger(__name__)

CANCELLABLE_STATUSES = (CompetitionStatus.UPCOMING, CompetitionStatus.ONGOING)


@dataclass
class CancellationResult:
    """Refund totals reported to the caller."""

    competition_id: str
    reason: str
    refunded_count: int = 0
    total_refunded: int = 0
    recipient_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "competition_id": self.competition_id,
            "reason": self.reason,
            "refunded_count": self.refunded_count,
            "total_refunded": self.total_refunded,
        }


class CancellationService:
    """Organizer cancellation and the undeclared-winner sweep."""

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

    async def cancel(
        self,
        actor: Actor,
        competition_id: str,
        reason: str | None,
        now: datetime | None = None,
    ) -> CancellationResult:
        """Cancel an upcoming or ongoing competition and refund everyone."""
        reason = require_reason(reason)
        competition = await lock_competition(self.session, competition_id)
        actor.require_owner(competition.organizer_id, competition.id)

        if competition.status not in CANCELLABLE_STATUSES:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                f"Cannot cancel a competition that is {competition.status.value}",
                details={"competition_id": competition_id, "status": competition.status.value},
            )
        return await self._cancel_and_refund(competition, reason, now or utcnow())

    async def find_overdue(self, now: datetime | None = None) -> list[str]:
        """Completed competitions whose winners were never declared in time."""
        now = now or utcnow()
        deadline = timedelta(minutes=self.rules.auto_cancel_after_minutes)

        result = await self.session.execute(
            select(Competition.id, Competition.ended_at).where(
                Competition.status == CompetitionStatus.COMPLETED,
                Competition.winner_declared_at.is_(None),
                Competition.ended_at.is_not(None),
            )
        )
        return [
            competition_id
            for competition_id, ended_at in result.all()
            if as_utc(ended_at) + deadline <= now
        ]

    async def auto_cancel(
        self,
        competition_id: str,
        now: datetime | None = None,
    ) -> CancellationResult:
        """Cancel one overdue competition; re-checked under the row lock."""
        now = now or utcnow()
        competition = await lock_competition(self.session, competition_id)

        overdue = (
            competition.status is CompetitionStatus.COMPLETED
            and competition.winner_declared_at is None
            and competition.ended_at is not None
            and as_utc(competition.ended_at)
            + timedelta(minutes=self.rules.auto_cancel_after_minutes)
            <= now
        )
        if not overdue:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                "Competition is not overdue for auto-cancellation",
                details={"competition_id": competition_id, "status": competition.status.value},
            )

        reason = (
            f"Winners were not declared within {self.rules.auto_cancel_after_minutes} "
            "minutes of the end"
        )
        return await self._cancel_and_refund(competition, reason, now)

    async def _cancel_and_refund(
        self,
        competition: Competition,
        reason: str,
        now: datetime,
    ) -> CancellationResult:
        registrations = await load_registrations(self.session, competition.id)
        accounts = await self.ledger.lock_accounts(r.account_id for r in registrations)

        result = CancellationResult(competition_id=competition.id, reason=reason)
        recipients: set[str] = set()
        for registration in registrations:
            recipients.update(registration.member_ids)
            if registration.amount_paid > 0:
                await self.ledger.post(
                    accounts[registration.account_id],
                    LedgerKind.REFUND,
                    BalancePool.SPENDABLE,
                    registration.amount_paid,
                    related_entity_id=competition.id,
                    reason=reason,
                    description=f"Cancellation refund: {competition.title}",
                )
                result.refunded_count += 1
                result.total_refunded += registration.amount_paid
            await self.session.delete(registration)

        competition.status = CompetitionStatus.CANCELLED
        competition.cancelled_at = now
        competition.cancel_reason = reason
        competition.joined_count = 0
        competition.current_prize_pool = 0
        await self.session.flush()

        result.recipient_ids = sorted(recipients)
        await self.events.record(
            "competition.cancelled",
            aggregate_id=competition.id,
            recipient_ids=result.recipient_ids,
            payload={
                "title": competition.title,
                "reason": reason,
                "refunded_count": result.refunded_count,
                "total_refunded": result.total_refunded,
            },
        )

        logger.info(
            "competition_cancelled",
            competition_id=competition.id,
            refunded_count=result.refunded_count,
            total_refunded=result.total_refunded,
            reason=reason,
        )
        return result
