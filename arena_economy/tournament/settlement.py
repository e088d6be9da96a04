"""
Prize Settlement Engine.

Two phases per competition:
1. Lock-time recalculation: on ``upcoming -> ongoing`` the prize pool is
   recomputed once from the actual participant count.
2. Winner declaration: after the dispute window, prizes are credited to
   the winners' withdrawable pools and the organizer earns its commission.

Usage:
    settlement = SettlementService(session, rules)
    summary = await settlement.declare_winners(actor, competition_id, {"acc-1": 1})
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from arena_economy.actor import Actor
from arena_economy.config import EconomyRules
from arena_economy.logging_config import get_logger
from arena_economy.models.competition import Competition, CompetitionStatus, Registration
from arena_economy.models.ledger import BalancePool, LedgerKind
from arena_economy.services.entry import load_registrations, lock_competition
from arena_economy.services.events import EventRecorder
from arena_economy.services.ledger import LedgerService
from arena_economy.utils.errors import (
    ErrorCode,
    StateConflictError,
    TimingError,
    ValidationError,
)
from arena_economy.utils.timeutil import as_utc, utcnow

logger = get_logger(__name__)


@dataclass
class PayoutResult:
    """One prize credit."""

    account_id: str = ""
    rank: int = 0
    prize_amount: int = 0
    team_name: str | None = None
    entry_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "rank": self.rank,
            "prize_amount": self.prize_amount,
            "team_name": self.team_name,
            "entry_id": self.entry_id,
        }


@dataclass
class SettlementSummary:
    """Outcome of a winner declaration."""

    competition_id: str = ""
    competition_title: str = ""
    prize_pool: int = 0
    total_paid: int = 0
    organizer_commission: int = 0
    payouts: list[PayoutResult] = field(default_factory=list)
    declared_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "competition_id": self.competition_id,
            "competition_title": self.competition_title,
            "prize_pool": self.prize_pool,
            "total_paid": self.total_paid,
            "organizer_commission": self.organizer_commission,
            "winners": len(self.payouts),
            "payouts": [p.to_dict() for p in self.payouts],
            "declared_at": self.declared_at.isoformat(),
        }


class SettlementService:
    """
    Prize settlement for scheduled competitions.

    Every method flushes into the caller's transaction, so a failure while
    crediting any winner rolls back every credit of the same declaration.
    """

    def __init__(
        self,
        session: AsyncSession,
        rules: EconomyRules,
        ledger: LedgerService | None = None,
        events: EventRecorder | None = None,
    ):
        self.session = session
        self.rules = rules
        self.ledger = ledger or LedgerService(session)
        self.events = events or EventRecorder(session)

    # =========================================================================
    # Match lifecycle
    # =========================================================================

    async def set_match_credentials(
        self,
        actor: Actor,
        competition_id: str,
        room_id: str,
        password: str | None = None,
    ) -> Competition:
        """Store the match room handed to players before start."""
        competition = await lock_competition(self.session, competition_id)
        actor.require_owner(competition.organizer_id, competition.id)

        if competition.status not in (CompetitionStatus.UPCOMING, CompetitionStatus.ONGOING):
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                f"Cannot set credentials on a {competition.status.value} competition",
                details={"competition_id": competition_id},
            )
        if not room_id or not room_id.strip():
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Match room id is required",
                details={"field": "room_id"},
            )

        competition.match_room_id = room_id.strip()
        competition.match_room_password = password
        await self.session.flush()
        return competition

    async def start(
        self,
        actor: Actor,
        competition_id: str,
        now: datetime | None = None,
    ) -> Competition:
        """Move ``upcoming -> ongoing`` and lock the prize pool.

        Raises:
            StateConflictError: Not upcoming, or match room id missing
            TimingError: Start time not reached
        """
        now = now or utcnow()
        competition = await lock_competition(self.session, competition_id)
        actor.require_owner(competition.organizer_id, competition.id)

        if competition.status is not CompetitionStatus.UPCOMING:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                f"Cannot start a competition that is {competition.status.value}",
                details={"competition_id": competition_id, "status": competition.status.value},
            )
        if not competition.match_room_id:
            raise StateConflictError(
                ErrorCode.MATCH_CREDENTIALS_MISSING,
                "Set the match room id before starting",
                details={"competition_id": competition_id},
            )
        start_time = as_utc(competition.start_time)
        if now < start_time:
            raise TimingError(
                ErrorCode.NOT_STARTED_YET,
                "Competition start time has not been reached",
                details={"competition_id": competition_id, "start_time": start_time.isoformat()},
            )

        competition.status = CompetitionStatus.ONGOING
        competition.started_at = now
        await self.recalculate_prize_pool(competition, now=now)

        logger.info(
            "competition_started",
            competition_id=competition.id,
            participants=competition.joined_count,
            prize_pool=competition.current_prize_pool,
        )
        return competition

    async def recalculate_prize_pool(
        self,
        competition: Competition,
        now: datetime | None = None,
    ) -> int:
        """Recompute the pool from actual joins. Runs once; retries are no-ops."""
        if competition.pool_locked_at is not None:
            return competition.current_prize_pool

        previous = competition.current_prize_pool
        competition.current_prize_pool = (
            competition.entry_fee * competition.joined_count * self.rules.prize_pool_percent // 100
        )
        competition.pool_locked_at = now or utcnow()
        await self.session.flush()

        logger.info(
            "prize_pool_recalculated",
            competition_id=competition.id,
            participants=competition.joined_count,
            previous_pool=previous,
            prize_pool=competition.current_prize_pool,
        )
        return competition.current_prize_pool

    async def complete(
        self,
        actor: Actor,
        competition_id: str,
        now: datetime | None = None,
    ) -> Competition:
        """Move ``ongoing -> completed`` and stamp the end time."""
        now = now or utcnow()
        competition = await lock_competition(self.session, competition_id)
        actor.require_owner(competition.organizer_id, competition.id)

        if competition.status is not CompetitionStatus.ONGOING:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                f"Cannot complete a competition that is {competition.status.value}",
                details={"competition_id": competition_id, "status": competition.status.value},
            )

        competition.status = CompetitionStatus.COMPLETED
        competition.ended_at = now
        await self.session.flush()
        return competition

    # =========================================================================
    # Winner declaration
    # =========================================================================

    async def declare_winners(
        self,
        actor: Actor,
        competition_id: str,
        positions: dict[str, int],
        now: datetime | None = None,
    ) -> SettlementSummary:
        """Credit prizes and organizer commission. One-time and irreversible.

        Args:
            actor: Organizer of the competition (or an administrator)
            competition_id: Competition ID
            positions: ``{account_id: rank}`` for solo,
                ``{team_name: rank}`` for duo/squad

        Raises:
            StateConflictError: Not completed, or already declared
            TimingError: Dispute window still open
            ValidationError: Unknown winner/rank, duplicate rank, over-allocation
        """
        now = now or utcnow()
        competition = await lock_competition(self.session, competition_id)
        actor.require_owner(competition.organizer_id, competition.id)

        if competition.status is not CompetitionStatus.COMPLETED:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                "Winners can only be declared for a completed competition",
                details={"competition_id": competition_id, "status": competition.status.value},
            )
        if competition.winner_declared_at is not None:
            raise StateConflictError(
                ErrorCode.WINNERS_ALREADY_DECLARED,
                "Winners have already been declared",
                details={
                    "competition_id": competition_id,
                    "winner_declared_at": as_utc(competition.winner_declared_at).isoformat(),
                },
            )

        window_ends = as_utc(competition.ended_at) + timedelta(minutes=self.rules.dispute_window_minutes)
        if now < window_ends:
            raise TimingError(
                ErrorCode.DISPUTE_WINDOW_OPEN,
                f"Winners can be declared {self.rules.dispute_window_minutes} minutes after the end",
                details={"competition_id": competition_id, "available_at": window_ends.isoformat()},
            )

        registrations = await load_registrations(self.session, competition.id)
        payouts = self._plan_payouts(competition, registrations, positions)

        total = sum(p.prize_amount for p in payouts)
        if total > competition.current_prize_pool:
            raise ValidationError(
                ErrorCode.PRIZE_OVER_ALLOCATION,
                "Declared prizes exceed the prize pool",
                details={"distributed": total, "prize_pool": competition.current_prize_pool},
            )

        commission = self.organizer_commission(competition)
        payable = [p for p in payouts if p.prize_amount > 0]
        account_ids = {p.account_id for p in payable}
        if commission > 0:
            account_ids.add(competition.organizer_id)
        accounts = await self.ledger.lock_accounts(account_ids)

        for payout in payable:
            entry = await self.ledger.post(
                accounts[payout.account_id],
                LedgerKind.PRIZE,
                BalancePool.WITHDRAWABLE,
                payout.prize_amount,
                related_entity_id=competition.id,
                description=f"Prize rank {payout.rank}: {competition.title}",
            )
            payout.entry_id = entry.id

        if commission > 0:
            await self.ledger.post(
                accounts[competition.organizer_id],
                LedgerKind.COMMISSION,
                BalancePool.WITHDRAWABLE,
                commission,
                related_entity_id=competition.id,
                description=f"Organizer commission: {competition.title}",
            )

        competition.winner_declared_at = now
        competition.total_prize_paid = total
        await self.session.flush()

        summary = SettlementSummary(
            competition_id=competition.id,
            competition_title=competition.title,
            prize_pool=competition.current_prize_pool,
            total_paid=total,
            organizer_commission=commission,
            payouts=payable,
            declared_at=now,
        )
        await self.events.record(
            "competition.winners_declared",
            aggregate_id=competition.id,
            recipient_ids=sorted({m for r in registrations for m in r.member_ids}),
            payload={
                "title": competition.title,
                "total_paid": total,
                "winners": [p.to_dict() for p in payable],
            },
        )

        logger.info(
            "winners_declared",
            competition_id=competition.id,
            winners=len(payable),
            total_paid=total,
            organizer_commission=commission,
            prize_pool=competition.current_prize_pool,
        )
        return summary

    def _plan_payouts(
        self,
        competition: Competition,
        registrations: list[Registration],
        positions: dict[str, int],
    ) -> list[PayoutResult]:
        """Resolve winners and split team prizes.

        Team prizes are floor-divided per member; the remainder goes to the
        registering leader.
        """
        if not positions:
            raise ValidationError(ErrorCode.INVALID_REQUEST, "At least one winner is required")

        ranks = list(positions.values())
        if len(set(ranks)) != len(ranks):
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Each rank may be assigned only once",
                details={"ranks": sorted(ranks)},
            )

        if competition.mode.is_team:
            by_key = {r.team_name: r for r in registrations}
        else:
            by_key = {r.account_id: r for r in registrations}

        payouts: list[PayoutResult] = []
        for key, rank in sorted(positions.items(), key=lambda item: item[1]):
            prize = competition.prize_for_rank(rank)
            if prize is None:
                raise ValidationError(
                    ErrorCode.UNKNOWN_RANK,
                    f"Rank {rank} is not in the prize distribution",
                    details={"rank": rank},
                )
            registration = by_key.get(key)
            if registration is None:
                raise ValidationError(
                    ErrorCode.NOT_REGISTERED,
                    f"Winner is not registered in this competition: {key}",
                    details={"winner": key},
                )

            if not competition.mode.is_team:
                payouts.append(PayoutResult(account_id=key, rank=rank, prize_amount=prize))
                continue

            members = registration.member_ids
            share, remainder = divmod(prize, len(members))
            for member_id in members:
                amount = share + remainder if member_id == registration.account_id else share
                payouts.append(
                    PayoutResult(
                        account_id=member_id,
                        rank=rank,
                        prize_amount=amount,
                        team_name=registration.team_name,
                    )
                )
        return payouts

    # =========================================================================
    # Estimates
    # =========================================================================

    def organizer_commission(self, competition: Competition) -> int:
        """Organizer share of entry fees actually collected."""
        return (
            competition.entry_fee * competition.joined_count * self.rules.organizer_commission_percent // 100
        )

    async def estimate_payouts(self, competition_id: str) -> dict[str, Any]:
        """Preview of the money split at the current participant count."""
        competition = await lock_competition(self.session, competition_id, for_update=False)

        collected = competition.entry_fee * competition.joined_count
        prize_pool = (
            competition.current_prize_pool
            if competition.pool_locked_at is not None
            else collected * self.rules.prize_pool_percent // 100
        )
        commission = self.organizer_commission(competition)
        distribution = {
            int(rank): int(amount)
            for rank, amount in sorted(
                (competition.prize_distribution or {}).items(), key=lambda item: int(item[0])
            )
        }
        distributed = sum(distribution.values())

        return {
            "competition_id": competition.id,
            "participants": competition.joined_count,
            "entry_fees_collected": collected,
            "prize_pool": prize_pool,
            "organizer_commission": commission,
            "platform_fee": collected - prize_pool - commission,
            "prize_distribution": distribution,
            "distributed": distributed,
            "fully_funded": distributed <= prize_pool,
        }
