"""
Knockout Bracket Engine.

Multi-round, room-based elimination:
- Registered teams are shuffled into rooms of a per-game size
- One winner per room advances; every other team in the room is eliminated
- A room whose teams have all forfeited closes without a winner
- The next round is generated only once every room of the current round
  is completed, re-verified here under the tournament row lock
- Re-starting a round that already has rooms never creates new rooms
- Prizes are paid once by final rank, funded by the organizer

Usage:
    engine = KnockoutEngine(session, rules)
    result = await engine.start_round(actor, tournament_id, 1)
"""

import random
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from arena_economy.actor import Actor
from arena_economy.config import EconomyRules
from arena_economy.logging_config import get_logger
from arena_economy.models.account import Account
from arena_economy.models.knockout import (
    BracketPhase,
    KnockoutRoom,
    KnockoutTeam,
    KnockoutTournament,
    RoomAssignment,
    RoomStatus,
)
from arena_economy.models.ledger import BalancePool, LedgerKind
from arena_economy.services.events import EventRecorder
from arena_economy.services.ledger import LedgerService
from arena_economy.tournament import state_machine
from arena_economy.tournament.structure import calculate_structure
from arena_economy.utils.errors import (
    AuthorizationError,
    CapacityError,
    ErrorCode,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from arena_economy.utils.timeutil import as_utc, utcnow

logger = get_logger(__name__)

MAX_TEAM_MEMBERS = 4


@dataclass
class RoundStartResult:
    """Outcome of ``start_round``."""

    tournament_id: str
    round_number: int
    room_count: int
    teams_assigned: int
    created: bool
    status: str

    def to_dict(self) -> dict:
        return {
            "tournament_id": self.tournament_id,
            "round_number": self.round_number,
            "room_count": self.room_count,
            "teams_assigned": self.teams_assigned,
            "created": self.created,
            "status": self.status,
        }


class KnockoutEngine:
    """Round generation, room results and tournament completion."""

    def __init__(
        self,
        session: AsyncSession,
        rules: EconomyRules,
        events: EventRecorder | None = None,
        rng: random.Random | None = None,
        ledger: LedgerService | None = None,
    ):
        self.session = session
        self.rules = rules
        self.events = events or EventRecorder(session)
        self.ledger = ledger or LedgerService(session)
        self.rng = rng or random.Random()

    # =========================================================================
    # Loading
    # =========================================================================

    async def _lock_tournament(self, tournament_id: str) -> KnockoutTournament:
        result = await self.session.execute(
            select(KnockoutTournament)
            .where(KnockoutTournament.id == tournament_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        tournament = result.scalar_one_or_none()
        if tournament is None:
            raise NotFoundError(
                ErrorCode.TOURNAMENT_NOT_FOUND,
                f"Tournament not found: {tournament_id}",
                details={"tournament_id": tournament_id},
            )
        return tournament

    async def _lock_room(self, room_id: str) -> KnockoutRoom:
        result = await self.session.execute(
            select(KnockoutRoom)
            .where(KnockoutRoom.id == room_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        room = result.scalar_one_or_none()
        if room is None:
            raise NotFoundError(
                ErrorCode.ROOM_NOT_FOUND,
                f"Room not found: {room_id}",
                details={"room_id": room_id},
            )
        return room

    async def _rooms(self, tournament_id: str, round_number: int) -> list[KnockoutRoom]:
        result = await self.session.execute(
            select(KnockoutRoom)
            .where(
                KnockoutRoom.tournament_id == tournament_id,
                KnockoutRoom.round_number == round_number,
            )
            .order_by(KnockoutRoom.room_number)
        )
        return list(result.scalars().all())

    async def _teams(self, tournament_id: str) -> list[KnockoutTeam]:
        result = await self.session.execute(
            select(KnockoutTeam)
            .where(KnockoutTeam.tournament_id == tournament_id)
            .order_by(KnockoutTeam.created_at, KnockoutTeam.id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Setup
    # =========================================================================

    async def create_tournament(
        self,
        actor: Actor,
        *,
        name: str,
        game: str,
        max_players: int,
        tournament_date: datetime,
    ) -> KnockoutTournament:
        """Create a tournament in the registration phase."""
        actor.require_organizer()
        if not name or not name.strip():
            raise ValidationError(ErrorCode.INVALID_REQUEST, "Name is required", {"field": "name"})

        teams_per_room = self.rules.room_size_for(game)
        structure = calculate_structure(teams_per_room, max_players)

        tournament = KnockoutTournament(
            organizer_id=actor.account_id,
            name=name.strip(),
            game=game.upper(),
            max_players=max_players,
            teams_per_room=teams_per_room,
            total_rounds=structure.total_rounds,
            phase=BracketPhase.REGISTRATION,
            current_round=0,
            registered_players=0,
            tournament_date=as_utc(tournament_date),
        )
        self.session.add(tournament)
        await self.session.flush()

        logger.info(
            "knockout_tournament_created",
            tournament_id=tournament.id,
            game=tournament.game,
            max_players=max_players,
            teams_per_room=teams_per_room,
            total_rounds=structure.total_rounds,
        )
        return tournament

    async def register_team(
        self,
        tournament_id: str,
        leader_id: str,
        name: str,
        member_ids: list[str] | None = None,
    ) -> KnockoutTeam:
        """Register a team of 1-4 players; the leader is always a member."""
        tournament = await self._lock_tournament(tournament_id)
        if not state_machine.accepts_registrations(tournament.phase):
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                f"Registration is closed ({tournament.status_label})",
                details={"tournament_id": tournament_id},
            )
        if not name or not name.strip():
            raise ValidationError(ErrorCode.INVALID_TEAM, "Team name is required", {"field": "name"})

        members = [leader_id]
        for member_id in member_ids or []:
            if member_id not in members:
                members.append(member_id)
        if len(members) > MAX_TEAM_MEMBERS:
            raise ValidationError(
                ErrorCode.INVALID_TEAM,
                f"A team has at most {MAX_TEAM_MEMBERS} players",
                details={"members": len(members)},
            )

        if tournament.registered_players + len(members) > tournament.max_players:
            raise CapacityError(
                ErrorCode.TOURNAMENT_FULL,
                "Tournament is full",
                details={
                    "tournament_id": tournament_id,
                    "max_players": tournament.max_players,
                    "registered_players": tournament.registered_players,
                },
            )

        result = await self.session.execute(select(Account).where(Account.id.in_(members)))
        accounts = {a.id: a for a in result.scalars().all()}
        for member_id in members:
            account = accounts.get(member_id)
            if account is None:
                raise NotFoundError(
                    ErrorCode.ACCOUNT_NOT_FOUND,
                    f"Account not found: {member_id}",
                    details={"account_id": member_id},
                )
            if account.is_restricted:
                raise AuthorizationError(
                    ErrorCode.ACCOUNT_BANNED if account.is_banned else ErrorCode.ACCOUNT_FROZEN,
                    f"Account {member_id} cannot register",
                    details={"account_id": member_id},
                )

        for team in await self._teams(tournament_id):
            if team.name == name.strip():
                raise StateConflictError(
                    ErrorCode.INVALID_TEAM,
                    f"Team name already taken: {team.name}",
                    details={"team_name": team.name},
                )
            taken = set(team.member_ids) & set(members)
            if taken:
                raise StateConflictError(
                    ErrorCode.ALREADY_JOINED,
                    "Player already registered in another team",
                    details={"account_ids": sorted(taken), "team_id": team.id},
                )

        team = KnockoutTeam(
            tournament_id=tournament.id,
            name=name.strip(),
            leader_id=leader_id,
            member_ids=members,
            current_round=0,
            is_eliminated=False,
        )
        self.session.add(team)
        tournament.registered_players += len(members)
        await self.session.flush()

        logger.info(
            "knockout_team_registered",
            tournament_id=tournament.id,
            team_id=team.id,
            members=len(members),
            registered_players=tournament.registered_players,
        )
        return team

    # =========================================================================
    # Rounds
    # =========================================================================

    async def start_round(
        self,
        actor: Actor,
        tournament_id: str,
        round_number: int,
        *,
        starts_at: datetime | None = None,
        now: datetime | None = None,
    ) -> RoundStartResult:
        """Generate rooms for a round, or report the existing ones.

        Raises:
            StateConflictError: Out-of-order round, previous round incomplete,
                too few active teams, or tournament already at finale
        """
        now = now or utcnow()
        tournament = await self._lock_tournament(tournament_id)
        actor.require_owner(tournament.organizer_id, tournament.id)

        existing = await self._rooms(tournament_id, round_number)
        if existing:
            return await self._resume_round(tournament, round_number, existing)

        if round_number != tournament.current_round + 1:
            raise StateConflictError(
                ErrorCode.ROUND_OUT_OF_ORDER,
                f"Next round is {tournament.current_round + 1}, got {round_number}",
                details={"tournament_id": tournament_id, "current_round": tournament.current_round},
            )

        if round_number > 1:
            progress = await self.round_progress(tournament_id, round_number - 1)
            if not progress["is_complete"]:
                raise StateConflictError(
                    ErrorCode.ROUND_INCOMPLETE,
                    f"Round {round_number - 1} still has rooms without a winner",
                    details=progress,
                )

        teams = [
            team
            for team in await self._teams(tournament_id)
            if not team.is_eliminated and team.current_round == round_number - 1
        ]
        # A lone survivor still plays the finale so it can be ranked
        minimum = 2 if round_number == 1 else 1
        if len(teams) < minimum:
            raise StateConflictError(
                ErrorCode.NO_ACTIVE_TEAMS,
                f"Round {round_number} needs at least {minimum} active teams, found {len(teams)}",
                details={"tournament_id": tournament_id, "active_teams": len(teams)},
            )

        self.rng.shuffle(teams)
        size = tournament.teams_per_room
        groups = [teams[i:i + size] for i in range(0, len(teams), size)]

        target = state_machine.phase_for_round(len(groups))
        tournament.phase = state_machine.transition(tournament.phase, target)
        tournament.current_round = round_number
        if target is BracketPhase.FINALE:
            tournament.total_rounds = round_number

        if starts_at is not None:
            base_time = as_utc(starts_at)
        elif round_number == 1:
            base_time = max(as_utc(tournament.tournament_date), now)
        else:
            base_time = now
        gap = timedelta(minutes=self.rules.room_schedule_gap_minutes)

        for index, group in enumerate(groups):
            room = KnockoutRoom(
                tournament_id=tournament.id,
                round_number=round_number,
                room_number=index + 1,
                name=f"Round {round_number} - Room {index + 1}",
                scheduled_time=base_time + gap * index,
                status=RoomStatus.WAITING,
            )
            self.session.add(room)
            await self.session.flush()
            for slot, team in enumerate(group, start=1):
                self.session.add(
                    RoomAssignment(
                        tournament_id=tournament.id,
                        round_number=round_number,
                        room_id=room.id,
                        team_id=team.id,
                        slot_number=slot,
                    )
                )
        await self.session.flush()

        await self.events.record(
            "knockout.round_started",
            aggregate_id=tournament.id,
            recipient_ids=sorted({m for team in teams for m in team.member_ids}),
            payload={
                "round_number": round_number,
                "room_count": len(groups),
                "status": tournament.status_label,
            },
        )

        logger.info(
            "knockout_round_started",
            tournament_id=tournament.id,
            round_number=round_number,
            rooms=len(groups),
            teams=len(teams),
            status=tournament.status_label,
        )
        return RoundStartResult(
            tournament_id=tournament.id,
            round_number=round_number,
            room_count=len(groups),
            teams_assigned=len(teams),
            created=True,
            status=tournament.status_label,
        )

    async def _resume_round(
        self,
        tournament: KnockoutTournament,
        round_number: int,
        rooms: list[KnockoutRoom],
    ) -> RoundStartResult:
        """Rooms already exist: bring the tournament status in line, create nothing."""
        if round_number > tournament.current_round:
            target = state_machine.phase_for_round(len(rooms))
            tournament.phase = state_machine.transition(tournament.phase, target)
            tournament.current_round = round_number
            await self.session.flush()

        result = await self.session.execute(
            select(func.count(RoomAssignment.id)).where(
                RoomAssignment.tournament_id == tournament.id,
                RoomAssignment.round_number == round_number,
            )
        )
        return RoundStartResult(
            tournament_id=tournament.id,
            round_number=round_number,
            room_count=len(rooms),
            teams_assigned=result.scalar_one(),
            created=False,
            status=tournament.status_label,
        )

    async def round_progress(
        self,
        tournament_id: str,
        round_number: int | None = None,
    ) -> dict[str, Any]:
        """Completion fraction of a round (default: the current round)."""
        if round_number is None:
            tournament = await self.session.get(KnockoutTournament, tournament_id)
            if tournament is None:
                raise NotFoundError(
                    ErrorCode.TOURNAMENT_NOT_FOUND,
                    f"Tournament not found: {tournament_id}",
                    details={"tournament_id": tournament_id},
                )
            round_number = tournament.current_round

        rooms = await self._rooms(tournament_id, round_number)
        completed = sum(1 for room in rooms if room.status is RoomStatus.COMPLETED)
        total = len(rooms)
        return {
            "round_number": round_number,
            "total_rooms": total,
            "completed_rooms": completed,
            "fraction": completed / total if total else 0.0,
            "is_complete": total > 0 and completed == total,
        }

    # =========================================================================
    # Rooms
    # =========================================================================

    async def set_room_credentials(
        self,
        actor: Actor,
        room_id: str,
        room_code: str,
        password: str | None = None,
        scheduled_time: datetime | None = None,
    ) -> KnockoutRoom:
        """Hand out the lobby id/password. No economic effect."""
        room = await self._lock_room(room_id)
        tournament = await self.session.get(KnockoutTournament, room.tournament_id)
        actor.require_owner(tournament.organizer_id, tournament.id)

        if room.status is RoomStatus.COMPLETED:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                "Room is already completed",
                details={"room_id": room_id},
            )
        if not room_code or not room_code.strip():
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Room code is required",
                details={"field": "room_code"},
            )

        room.room_code = room_code.strip()
        room.room_password = password
        if scheduled_time is not None:
            room.scheduled_time = as_utc(scheduled_time)
        room.status = RoomStatus.CREDENTIALS_SET
        await self.session.flush()
        return room

    async def declare_room_winner(
        self,
        actor: Actor,
        room_id: str,
        winner_team_id: str,
    ) -> dict[str, Any]:
        """Record the room winner, advance it and eliminate the rest.

        Applied as one unit: winner, eliminations and room status are
        flushed together in the caller's transaction.
        """
        room = await self._lock_room(room_id)
        tournament = await self.session.get(KnockoutTournament, room.tournament_id)
        actor.require_owner(tournament.organizer_id, tournament.id)

        if room.winner_team_id is not None:
            raise StateConflictError(
                ErrorCode.ROOM_WINNER_ALREADY_SET,
                "Room winner already declared",
                details={"room_id": room_id, "winner_team_id": room.winner_team_id},
            )
        if room.status is not RoomStatus.CREDENTIALS_SET:
            raise StateConflictError(
                ErrorCode.ROOM_CREDENTIALS_MISSING,
                "Room credentials must be set before a winner is declared",
                details={"room_id": room_id, "status": room.status.value},
            )

        result = await self.session.execute(
            select(RoomAssignment, KnockoutTeam)
            .join(KnockoutTeam, KnockoutTeam.id == RoomAssignment.team_id)
            .where(RoomAssignment.room_id == room.id)
            .order_by(RoomAssignment.slot_number)
            .with_for_update()
        )
        rows = result.all()
        by_team = {team.id: (assignment, team) for assignment, team in rows}

        if winner_team_id not in by_team:
            raise ValidationError(
                ErrorCode.TEAM_NOT_IN_ROOM,
                "Winning team is not assigned to this room",
                details={"room_id": room_id, "team_id": winner_team_id},
            )
        winner_assignment, winner = by_team[winner_team_id]
        if winner.is_eliminated:
            raise StateConflictError(
                ErrorCode.TEAM_ELIMINATED,
                "Winning team has already been eliminated",
                details={"team_id": winner_team_id},
            )

        winner.current_round = room.round_number
        winner_assignment.is_winner = True

        eliminated: list[str] = []
        for assignment, team in rows:
            if team.id == winner.id or team.is_eliminated:
                continue
            team.is_eliminated = True
            team.eliminated_in_round = room.round_number
            eliminated.append(team.id)

        room.winner_team_id = winner.id
        room.status = RoomStatus.COMPLETED
        await self.session.flush()

        await self.events.record(
            "knockout.room_winner_declared",
            aggregate_id=room.id,
            recipient_ids=sorted({m for _, team in rows for m in team.member_ids}),
            payload={
                "tournament_id": tournament.id,
                "round_number": room.round_number,
                "room_number": room.room_number,
                "winner_team_id": winner.id,
                "winner_team_name": winner.name,
            },
        )

        logger.info(
            "knockout_room_winner",
            tournament_id=tournament.id,
            room_id=room.id,
            round_number=room.round_number,
            winner_team_id=winner.id,
            eliminated=len(eliminated),
        )
        return {
            "room_id": room.id,
            "round_number": room.round_number,
            "winner_team_id": winner.id,
            "eliminated_count": len(eliminated),
        }

    async def forfeit_team(self, actor: Actor, team_id: str) -> KnockoutTeam:
        """Eliminate a team that withdraws. Bracket entries carry no escrow, so nothing is refunded."""
        team = await self.session.get(KnockoutTeam, team_id)
        if team is None:
            raise NotFoundError(
                ErrorCode.TEAM_NOT_FOUND,
                f"Team not found: {team_id}",
                details={"team_id": team_id},
            )
        tournament = await self._lock_tournament(team.tournament_id)
        if actor.account_id != team.leader_id:
            actor.require_owner(tournament.organizer_id, tournament.id)

        if tournament.phase is BracketPhase.COMPLETED:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                "Tournament is already completed",
                details={"tournament_id": tournament.id},
            )
        if team.is_eliminated:
            raise StateConflictError(
                ErrorCode.TEAM_ELIMINATED,
                "Team is already eliminated",
                details={"team_id": team_id},
            )
        if tournament.current_round > 0 and team.current_round == tournament.current_round:
            raise StateConflictError(
                ErrorCode.TEAM_ALREADY_ADVANCED,
                "Team has already won its room this round; forfeit once the next round starts",
                details={"team_id": team_id, "round_number": tournament.current_round},
            )

        team.is_eliminated = True
        team.forfeited = True
        team.eliminated_in_round = tournament.current_round
        await self.session.flush()

        closed_room_id = await self._close_abandoned_room(tournament, team)

        logger.info(
            "knockout_team_forfeited",
            tournament_id=tournament.id,
            team_id=team.id,
            round_number=tournament.current_round,
            closed_room_id=closed_room_id,
        )
        return team

    async def _close_abandoned_room(
        self,
        tournament: KnockoutTournament,
        team: KnockoutTeam,
    ) -> str | None:
        """Complete the team's current room without a winner once nobody is left in it.

        Such a room counts toward round completion and advances no team.
        """
        if tournament.current_round == 0:
            return None

        result = await self.session.execute(
            select(RoomAssignment.room_id).where(
                RoomAssignment.team_id == team.id,
                RoomAssignment.round_number == tournament.current_round,
            )
        )
        room_id = result.scalar_one_or_none()
        if room_id is None:
            return None

        room = await self._lock_room(room_id)
        if room.status is RoomStatus.COMPLETED:
            return None

        result = await self.session.execute(
            select(func.count(KnockoutTeam.id))
            .join(RoomAssignment, RoomAssignment.team_id == KnockoutTeam.id)
            .where(
                RoomAssignment.room_id == room.id,
                KnockoutTeam.is_eliminated.is_(False),
            )
        )
        if result.scalar_one() > 0:
            return None

        room.status = RoomStatus.COMPLETED
        await self.session.flush()
        logger.info(
            "knockout_room_abandoned",
            tournament_id=tournament.id,
            room_id=room.id,
            round_number=room.round_number,
        )
        return room.id

    # =========================================================================
    # Completion
    # =========================================================================

    async def declare_final_winners(
        self,
        actor: Actor,
        tournament_id: str,
        ranked_team_ids: list[str],
        now: datetime | None = None,
    ) -> KnockoutTournament:
        """Assign final ranks (first entry = rank 1) and complete the tournament.

        Rank 1 must be the winner of the finale room; every ranked team must
        have played the finale.
        """
        now = now or utcnow()
        tournament = await self._lock_tournament(tournament_id)
        actor.require_owner(tournament.organizer_id, tournament.id)

        if tournament.phase is not BracketPhase.FINALE:
            state_machine.transition(tournament.phase, BracketPhase.COMPLETED)

        if not ranked_team_ids or len(set(ranked_team_ids)) != len(ranked_team_ids):
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Ranked team ids must be a non-empty list without duplicates",
            )

        rooms = await self._rooms(tournament_id, tournament.current_round)
        finale = rooms[0] if len(rooms) == 1 else None
        if finale is None or finale.status is not RoomStatus.COMPLETED:
            raise StateConflictError(
                ErrorCode.ROUND_INCOMPLETE,
                "The finale room has no winner yet",
                details={"tournament_id": tournament_id},
            )
        if ranked_team_ids[0] != finale.winner_team_id:
            raise ValidationError(
                ErrorCode.INVALID_REQUEST,
                "Rank 1 must be the finale room winner",
                details={"winner_team_id": finale.winner_team_id},
            )

        result = await self.session.execute(
            select(KnockoutTeam)
            .join(RoomAssignment, RoomAssignment.team_id == KnockoutTeam.id)
            .where(RoomAssignment.room_id == finale.id)
        )
        finalists = {team.id: team for team in result.scalars().all()}
        for rank, team_id in enumerate(ranked_team_ids, start=1):
            team = finalists.get(team_id)
            if team is None:
                raise ValidationError(
                    ErrorCode.TEAM_NOT_IN_ROOM,
                    "Only finalists can be ranked",
                    details={"team_id": team_id},
                )
            team.final_rank = rank

        tournament.phase = state_machine.transition(tournament.phase, BracketPhase.COMPLETED)
        tournament.ended_at = now
        await self.session.flush()

        logger.info(
            "knockout_tournament_completed",
            tournament_id=tournament.id,
            champion_team_id=ranked_team_ids[0],
            ranked=len(ranked_team_ids),
        )
        return tournament

    async def distribute_prizes(
        self,
        actor: Actor,
        tournament_id: str,
        distribution: dict[int | str, int],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Pay prizes by final rank. One-time, completed tournaments only.

        The organizer funds the payout from its spendable pool. Each rank's
        prize is floor-divided across the team's members into their
        withdrawable pools; the remainder goes to the team leader.

        Args:
            distribution: ``{rank: amount}``; ranks must have been assigned
                by ``declare_final_winners``

        Raises:
            StateConflictError: Not completed, or prizes already distributed
            ValidationError: Bad rank/amount, or a rank nobody holds
            InsufficientFundsError: Organizer cannot fund the total
        """
        now = now or utcnow()
        tournament = await self._lock_tournament(tournament_id)
        actor.require_owner(tournament.organizer_id, tournament.id)

        if tournament.phase is not BracketPhase.COMPLETED:
            raise StateConflictError(
                ErrorCode.INVALID_STATUS,
                f"Prizes can only be distributed once the tournament is completed ({tournament.status_label})",
                details={"tournament_id": tournament_id},
            )
        if tournament.prizes_distributed_at is not None:
            raise StateConflictError(
                ErrorCode.PRIZES_ALREADY_DISTRIBUTED,
                "Prizes have already been distributed",
                details={
                    "tournament_id": tournament_id,
                    "prizes_distributed_at": as_utc(tournament.prizes_distributed_at).isoformat(),
                },
            )

        prizes = self._normalize_prizes(distribution)
        ranked = {
            team.final_rank: team
            for team in await self._teams(tournament_id)
            if team.final_rank is not None
        }

        credits: list[tuple[KnockoutTeam, int, str, int]] = []
        for rank, prize in sorted(prizes.items()):
            team = ranked.get(rank)
            if team is None:
                raise ValidationError(
                    ErrorCode.UNKNOWN_RANK,
                    f"No team holds final rank {rank}",
                    details={"rank": rank},
                )
            if prize == 0:
                continue
            share, remainder = divmod(prize, len(team.member_ids))
            for member_id in team.member_ids:
                amount = share + remainder if member_id == team.leader_id else share
                if amount > 0:
                    credits.append((team, rank, member_id, amount))

        total = sum(prizes.values())
        accounts = await self.ledger.lock_accounts(
            [tournament.organizer_id, *(member_id for _, _, member_id, _ in credits)]
        )
        if total > 0:
            await self.ledger.post(
                accounts[tournament.organizer_id],
                LedgerKind.PRIZE_FUNDING,
                BalancePool.SPENDABLE,
                -total,
                related_entity_id=tournament.id,
                description=f"Prize funding: {tournament.name}",
            )

        payouts = []
        for team, rank, member_id, amount in credits:
            entry = await self.ledger.post(
                accounts[member_id],
                LedgerKind.PRIZE,
                BalancePool.WITHDRAWABLE,
                amount,
                related_entity_id=tournament.id,
                description=f"Prize rank {rank}: {tournament.name}",
            )
            payouts.append(
                {
                    "account_id": member_id,
                    "team_id": team.id,
                    "team_name": team.name,
                    "rank": rank,
                    "prize_amount": amount,
                    "entry_id": entry.id,
                }
            )

        tournament.prizes_distributed_at = now
        tournament.total_prize_paid = total
        await self.session.flush()

        await self.events.record(
            "knockout.prizes_distributed",
            aggregate_id=tournament.id,
            recipient_ids=sorted({p["account_id"] for p in payouts}),
            payload={"name": tournament.name, "total_paid": total},
        )

        logger.info(
            "knockout_prizes_distributed",
            tournament_id=tournament.id,
            total_paid=total,
            teams_rewarded=len({p["team_id"] for p in payouts}),
            credits=len(payouts),
        )
        return {
            "tournament_id": tournament.id,
            "total_paid": total,
            "teams_rewarded": len({p["team_id"] for p in payouts}),
            "payouts": payouts,
        }

    @staticmethod
    def _normalize_prizes(distribution: dict[int | str, int]) -> dict[int, int]:
        if not distribution:
            raise ValidationError(ErrorCode.INVALID_REQUEST, "Prize distribution must name at least one rank")
        prizes: dict[int, int] = {}
        for rank, amount in distribution.items():
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
            prizes[rank_number] = amount
        return prizes

    async def get_stats(self, tournament_id: str) -> dict[str, Any]:
        """Team counts and per-round room completion."""
        tournament = await self.session.get(KnockoutTournament, tournament_id)
        if tournament is None:
            raise NotFoundError(
                ErrorCode.TOURNAMENT_NOT_FOUND,
                f"Tournament not found: {tournament_id}",
                details={"tournament_id": tournament_id},
            )

        teams = await self._teams(tournament_id)
        result = await self.session.execute(
            select(KnockoutRoom.round_number, KnockoutRoom.status).where(
                KnockoutRoom.tournament_id == tournament_id
            )
        )
        rooms_by_round: dict[int, dict[str, int]] = defaultdict(lambda: {"total": 0, "completed": 0})
        for round_number, status in result.all():
            rooms_by_round[round_number]["total"] += 1
            if status is RoomStatus.COMPLETED:
                rooms_by_round[round_number]["completed"] += 1

        active = sum(1 for team in teams if not team.is_eliminated)
        return {
            "tournament_id": tournament.id,
            "name": tournament.name,
            "status": tournament.status_label,
            "current_round": tournament.current_round,
            "total_rounds": tournament.total_rounds,
            "total_teams": len(teams),
            "active_teams": active,
            "eliminated_teams": len(teams) - active,
            "registered_players": tournament.registered_players,
            "rooms_by_round": dict(sorted(rooms_by_round.items())),
        }
