"""Tournament Entry Manager.

Competition creation, join (solo and team) and solo exit. The entry-fee
debit, prize-pool credit, registration and participant rows are written in
the caller's single transaction; any failure rolls all of them back.
"""

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from arena_economy.actor import Actor
from arena_economy.config import EconomyRules
from arena_economy.logging_config import get_logger
from arena_economy.models.competition import (
    Competition,
    CompetitionMode,
    CompetitionParticipant,
    CompetitionStatus,
    Registration,
)
from arena_economy.models.ledger import BalancePool, LedgerEntry, LedgerKind
from arena_economy.services.ledger import LedgerService
from arena_economy.utils.errors import (
    AuthorizationError,
    CapacityError,
    ErrorCode,
    NotFoundError,
    StateConflictError,
    TimingError,
    ValidationError,
)
from arena_economy.utils.timeutil import as_utc, utcnow

logger = get_logger(__name__)


async def lock_competition(
    session: AsyncSession,
    competition_id: str,
    *,
    for_update: bool = True,
) -> Competition:
    """Load a competition row, with ``SELECT ... FOR UPDATE`` unless told otherwise."""
    query = select(Competition).where(Competition.id == competition_id)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query.execution_options(populate_existing=True))
    competition = result.scalar_one_or_none()
    if competition is None:
        raise NotFoundError(
            ErrorCode.COMPETITION_NOT_FOUND,
            f"Competition not found: {competition_id}",
            details={"competition_id": competition_id},
        )
    return competition


async def load_registrations(session: AsyncSession, competition_id: str) -> list[Registration]:
    """All registrations of a competition, oldest first."""
    result = await session.execute(
        select(Registration)
        .where(Registration.competition_id == competition_id)
        .order_by(Registration.created_at, Registration.id)
    )
    return list(result.scalars().all())


def pool_share(rules: EconomyRules, entry_fee: int) -> int:
    """Prize-pool credit for one participant's entry fee."""
    return entry_fee * rules.prize_pool_percent // 100


class EntryService:
    """Competition entry and exit."""

    def __init__(
        self,
        session: AsyncSession,
        rules: EconomyRules,
        ledger: LedgerService | None = None,
    ) -> None:
        self.session = session
        self.rules = rules
        self.ledger = ledger or LedgerService(session)

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_competition(
        self,
        actor: Actor,
        *,
        title: str,
        mode: CompetitionMode,
        capacity: int,
        entry_fee: int,
        start_time: datetime,
        prize_distribution: dict[int | str, int],
        game: str = "BGMI",
        now: datetime | None = None,
    ) -> Competition:
        """Create an upcoming competition owned by the calling organizer.

        ``estimated_prize_pool`` assumes full capacity; the escrowed
        ``current_prize_pool`` starts at zero and grows with joins.
        """
        actor.require_organizer()
        now = now or utcnow()

        if not title or not title.strip():
            raise ValidationError(ErrorCode.INVALID_REQUEST, "Title is required", {"field": "title"})
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < mode.team_size:
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                f"Capacity must be at least {mode.team_size} for {mode.value} mode",
                details={"capacity": capacity},
            )
        if capacity % mode.team_size:
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                f"Capacity must be a multiple of the team size ({mode.team_size})",
                details={"capacity": capacity},
            )
        if isinstance(entry_fee, bool) or not isinstance(entry_fee, int) or entry_fee < 0:
            raise ValidationError(
                ErrorCode.INVALID_AMOUNT,
                f"Invalid entry fee: {entry_fee!r}",
                details={"entry_fee": entry_fee},
            )
        start_time = as_utc(start_time)
        if start_time <= now:
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Start time must be in the future",
                details={"start_time": start_time.isoformat()},
            )

        distribution = self._normalize_distribution(prize_distribution)
        estimated_pool = pool_share(self.rules, entry_fee) * capacity
        if sum(distribution.values()) > estimated_pool:
            raise ValidationError(
                ErrorCode.PRIZE_OVER_ALLOCATION,
                "Prize distribution exceeds the estimated prize pool",
                details={
                    "distributed": sum(distribution.values()),
                    "estimated_prize_pool": estimated_pool,
                },
            )

        competition = Competition(
            organizer_id=actor.account_id,
            title=title.strip(),
            game=game.upper(),
            mode=mode,
            status=CompetitionStatus.UPCOMING,
            capacity=capacity,
            joined_count=0,
            entry_fee=entry_fee,
            estimated_prize_pool=estimated_pool,
            current_prize_pool=0,
            prize_distribution=distribution,
            start_time=start_time,
        )
        self.session.add(competition)
        await self.session.flush()

        logger.info(
            "competition_created",
            competition_id=competition.id,
            organizer_id=actor.account_id,
            mode=mode.value,
            capacity=capacity,
            entry_fee=entry_fee,
            estimated_prize_pool=estimated_pool,
        )
        return competition

    @staticmethod
    def _normalize_distribution(prize_distribution: dict[int | str, int]) -> dict[str, int]:
        if not prize_distribution:
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Prize distribution must name at least one rank",
            )
        distribution: dict[str, int] = {}
        for rank, amount in prize_distribution.items():
            try:
                rank_number = int(rank)
            except (TypeError, ValueError):
                rank_number = 0
            if rank_number < 1:
                raise ValidationError(
                    ErrorCode.UNKNOWN_RANK,
                    f"Invalid rank: {rank!r}",
                    details={"rank": str(rank)},
                )
            if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
                raise ValidationError(
                    ErrorCode.INVALID_AMOUNT,
                    f"Invalid prize for rank {rank_number}: {amount!r}",
                    details={"rank": rank_number},
                )
            distribution[str(rank_number)] = amount
        return distribution

    # =========================================================================
    # Join
    # =========================================================================

    async def join(
        self,
        account_id: str,
        competition_id: str,
        *,
        team_name: str | None = None,
        member_ids: list[str] | None = None,
        now: datetime | None = None,
    ) -> Registration:
        """Join a competition, escrowing the entry fee.

        For duo/squad the caller is the team leader and pays
        ``entry_fee * team_size`` for the whole team.

        Raises:
            StateConflictError: Not upcoming, already joined, team name taken
            TimingError: Join cutoff passed
            AuthorizationError: A member is frozen or banned
            CapacityError: Not enough slots left
            InsufficientFundsError: Leader cannot cover the fee
        """
        now = now or utcnow()
        competition = await lock_competition(self.session, competition_id)

        if competition.status is not CompetitionStatus.UPCOMING:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                f"Cannot join a competition that is {competition.status.value}",
                details={"competition_id": competition_id, "status": competition.status.value},
            )

        cutoff = as_utc(competition.start_time) - timedelta(minutes=self.rules.join_cutoff_minutes)
        if now >= cutoff:
            raise TimingError(
                ErrorCode.JOIN_CLOSED,
                f"Joining closed {self.rules.join_cutoff_minutes} minutes before start",
                details={"competition_id": competition_id, "cutoff": cutoff.isoformat()},
            )

        members = self._team_members(competition.mode, account_id, team_name, member_ids)
        accounts = await self.ledger.lock_accounts(members)
        for member_id in members:
            member = accounts[member_id]
            if member.is_banned or member.is_frozen:
                code = ErrorCode.ACCOUNT_BANNED if member.is_banned else ErrorCode.ACCOUNT_FROZEN
                raise AuthorizationError(
                    code,
                    f"Account {member_id} is {'banned' if member.is_banned else 'frozen'}",
                    details={"account_id": member_id},
                )

        result = await self.session.execute(
            select(CompetitionParticipant.account_id).where(
                CompetitionParticipant.competition_id == competition_id,
                CompetitionParticipant.account_id.in_(members),
            )
        )
        already = sorted(result.scalars().all())
        if already:
            raise StateConflictError(
                ErrorCode.ALREADY_JOINED,
                "Already registered for this competition",
                details={"competition_id": competition_id, "account_ids": already},
            )

        if team_name is not None:
            result = await self.session.execute(
                select(Registration.id).where(
                    Registration.competition_id == competition_id,
                    Registration.team_name == team_name,
                )
            )
            if result.scalar_one_or_none() is not None:
                raise StateConflictError(
                    ErrorCode.INVALID_TEAM,
                    f"Team name already taken: {team_name}",
                    details={"team_name": team_name},
                )

        size = len(members)
        if competition.joined_count + size > competition.capacity:
            raise CapacityError(
                ErrorCode.COMPETITION_FULL,
                "Competition is full",
                details={
                    "competition_id": competition_id,
                    "capacity": competition.capacity,
                    "slots_left": competition.slots_left,
                },
            )

        fee = competition.entry_fee * size
        fee_entry: LedgerEntry | None = None
        if fee > 0:
            fee_entry = await self.ledger.post(
                accounts[account_id],
                LedgerKind.ENTRY_FEE,
                BalancePool.SPENDABLE,
                -fee,
                related_entity_id=competition.id,
                description=f"Entry fee: {competition.title}",
            )

        registration = Registration(
            competition_id=competition.id,
            account_id=account_id,
            team_name=team_name,
            amount_paid=fee,
            fee_entry_id=fee_entry.id if fee_entry else None,
        )
        registration.participants = [
            CompetitionParticipant(competition_id=competition.id, account_id=member_id)
            for member_id in members
        ]
        self.session.add(registration)

        competition.joined_count += size
        competition.current_prize_pool += pool_share(self.rules, competition.entry_fee) * size
        await self.session.flush()

        logger.info(
            "competition_joined",
            competition_id=competition.id,
            account_id=account_id,
            team_name=team_name,
            members=size,
            fee=fee,
            joined_count=competition.joined_count,
            current_prize_pool=competition.current_prize_pool,
        )
        return registration

    @staticmethod
    def _team_members(
        mode: CompetitionMode,
        leader_id: str,
        team_name: str | None,
        member_ids: list[str] | None,
    ) -> list[str]:
        """Leader first, then distinct teammates; size must match the mode."""
        if not mode.is_team:
            if team_name or member_ids:
                raise ValidationError(
                    ErrorCode.INVALID_TEAM,
                    "Solo competitions do not take a team",
                )
            return [leader_id]

        if not team_name or not team_name.strip():
            raise ValidationError(
                ErrorCode.INVALID_TEAM,
                "Team name is required for team modes",
                details={"field": "team_name"},
            )

        members = [leader_id]
        for member_id in member_ids or []:
            if member_id not in members:
                members.append(member_id)
        if len(members) != mode.team_size:
            raise ValidationError(
                ErrorCode.INVALID_TEAM,
                f"{mode.value} teams need exactly {mode.team_size} distinct players",
                details={"expected": mode.team_size, "got": len(members)},
            )
        return members

    # =========================================================================
    # Exit
    # =========================================================================

    async def exit(
        self,
        account_id: str,
        competition_id: str,
        *,
        now: datetime | None = None,
    ) -> LedgerEntry | None:
        """Leave a solo competition before the exit cutoff, refunding the fee.

        Returns:
            The refund entry (None for a free competition)
        """
        now = now or utcnow()
        competition = await lock_competition(self.session, competition_id)

        result = await self.session.execute(
            select(Registration)
            .join(CompetitionParticipant, CompetitionParticipant.registration_id == Registration.id)
            .where(
                CompetitionParticipant.competition_id == competition_id,
                CompetitionParticipant.account_id == account_id,
            )
        )
        registration = result.scalar_one_or_none()
        if registration is None:
            raise StateConflictError(
                ErrorCode.NOT_REGISTERED,
                "Not registered for this competition",
                details={"competition_id": competition_id, "account_id": account_id},
            )

        if competition.mode.is_team:
            raise StateConflictError(
                ErrorCode.TEAM_EXIT_NOT_ALLOWED,
                "Team entry fees are non-refundable once registered",
                details={"competition_id": competition_id, "mode": competition.mode.value},
            )

        if competition.status is not CompetitionStatus.UPCOMING:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                f"Cannot exit a competition that is {competition.status.value}",
                details={"competition_id": competition_id, "status": competition.status.value},
            )

        cutoff = as_utc(competition.start_time) - timedelta(minutes=self.rules.exit_cutoff_minutes)
        if now >= cutoff:
            raise TimingError(
                ErrorCode.EXIT_CLOSED,
                f"Exit closed {self.rules.exit_cutoff_minutes} minutes before start",
                details={"competition_id": competition_id, "cutoff": cutoff.isoformat()},
            )

        refund: LedgerEntry | None = None
        if registration.amount_paid > 0:
            account = await self.ledger.lock_account(account_id)
            refund = await self.ledger.post(
                account,
                LedgerKind.REFUND,
                BalancePool.SPENDABLE,
                registration.amount_paid,
                related_entity_id=competition.id,
                description=f"Exit refund: {competition.title}",
            )

        competition.joined_count -= 1
        competition.current_prize_pool = max(
            0,
            competition.current_prize_pool - pool_share(self.rules, competition.entry_fee),
        )
        await self.session.delete(registration)
        await self.session.flush()

        logger.info(
            "competition_exited",
            competition_id=competition.id,
            account_id=account_id,
            refunded=registration.amount_paid,
            joined_count=competition.joined_count,
            current_prize_pool=competition.current_prize_pool,
        )
        return refund
