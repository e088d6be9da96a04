"""Tests for EntryService.

Competition creation, solo/team join with fee escrow, and solo exit.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from arena_economy.actor import Actor
from arena_economy.models.competition import (
    CompetitionMode,
    CompetitionParticipant,
    Registration,
)
from arena_economy.models.ledger import LedgerEntry, LedgerKind
from arena_economy.services.entry import EntryService
from arena_economy.utils.errors import (
    AuthorizationError,
    CapacityError,
    ErrorCode,
    InsufficientFundsError,
    StateConflictError,
    TimingError,
    ValidationError,
)
from tests.conftest import FIXED_NOW, make_account, make_competition


async def count(session, model, **filters) -> int:
    query = select(func.count()).select_from(model)
    for column, value in filters.items():
        query = query.where(getattr(model, column) == value)
    return (await session.execute(query)).scalar_one()


class TestCreateCompetition:
    async def test_estimated_pool_assumes_full_capacity(self, session, rules):
        organizer = await make_account(session, "org")

        competition = await make_competition(session, rules, organizer, capacity=10, entry_fee=50)

        assert competition.estimated_prize_pool == 400
        assert competition.current_prize_pool == 0
        assert competition.prize_distribution == {"1": 40}

    async def test_player_cannot_create(self, session, rules):
        player = await make_account(session, "player")

        with pytest.raises(AuthorizationError):
            await EntryService(session, rules).create_competition(
                Actor(account_id=player.id),
                title="No role",
                mode=CompetitionMode.SOLO,
                capacity=2,
                entry_fee=10,
                start_time=FIXED_NOW + timedelta(hours=1),
                prize_distribution={1: 10},
                now=FIXED_NOW,
            )

    async def test_distribution_over_estimate_rejected(self, session, rules):
        organizer = await make_account(session, "org")

        with pytest.raises(ValidationError) as exc_info:
            await make_competition(
                session, rules, organizer, capacity=2, entry_fee=50, prize_distribution={1: 81}
            )
        assert exc_info.value.code == ErrorCode.PRIZE_OVER_ALLOCATION.value

    async def test_squad_capacity_must_fit_whole_teams(self, session, rules):
        organizer = await make_account(session, "org")

        with pytest.raises(ValidationError):
            await make_competition(session, rules, organizer, mode=CompetitionMode.SQUAD, capacity=6)

    async def test_start_time_in_past_rejected(self, session, rules):
        organizer = await make_account(session, "org")

        with pytest.raises(ValidationError):
            await make_competition(session, rules, organizer, start_in=timedelta(minutes=-5))


class TestSoloJoin:
    """Tests for solo joins and fee escrow."""

    async def test_join_debits_fee_and_credits_pool(self, session, rules):
        organizer = await make_account(session, "org")
        player = await make_account(session, "p1", spendable=100)
        competition = await make_competition(session, rules, organizer)

        registration = await EntryService(session, rules).join(
            player.id, competition.id, now=FIXED_NOW
        )

        assert registration.amount_paid == 50
        assert player.spendable_balance == 50
        assert competition.joined_count == 1
        assert competition.current_prize_pool == 40
        assert registration.member_ids == [player.id]

    async def test_double_join_is_rejected_without_second_charge(self, session, rules):
        organizer = await make_account(session, "org")
        player = await make_account(session, "p1", spendable=100)
        competition = await make_competition(session, rules, organizer, capacity=4)
        entry = EntryService(session, rules)
        await entry.join(player.id, competition.id, now=FIXED_NOW)

        with pytest.raises(StateConflictError) as exc_info:
            await entry.join(player.id, competition.id, now=FIXED_NOW)

        assert exc_info.value.code == ErrorCode.ALREADY_JOINED.value
        assert await count(session, Registration, competition_id=competition.id) == 1
        assert await count(session, LedgerEntry, kind=LedgerKind.ENTRY_FEE) == 1
        assert player.spendable_balance == 50

    async def test_full_competition_returns_capacity_error(self, session, rules):
        organizer = await make_account(session, "org")
        competition = await make_competition(session, rules, organizer, capacity=2)
        entry = EntryService(session, rules)
        for name in ("p1", "p2"):
            player = await make_account(session, name, spendable=50)
            await entry.join(player.id, competition.id, now=FIXED_NOW)
        late = await make_account(session, "late", spendable=50)

        with pytest.raises(CapacityError) as exc_info:
            await entry.join(late.id, competition.id, now=FIXED_NOW)

        assert exc_info.value.code == ErrorCode.COMPETITION_FULL.value
        assert late.spendable_balance == 50

    async def test_join_cutoff(self, session, rules):
        organizer = await make_account(session, "org")
        player = await make_account(session, "p1", spendable=50)
        competition = await make_competition(session, rules, organizer, start_in=timedelta(minutes=10))

        with pytest.raises(TimingError) as exc_info:
            await EntryService(session, rules).join(
                player.id, competition.id, now=FIXED_NOW + timedelta(minutes=8)
            )
        assert exc_info.value.code == ErrorCode.JOIN_CLOSED.value

    @pytest.mark.parametrize("flag", ["is_frozen", "is_banned"])
    async def test_restricted_account_cannot_join(self, session, rules, flag):
        organizer = await make_account(session, "org")
        player = await make_account(session, "p1", spendable=50)
        setattr(player, flag, True)
        await session.flush()
        competition = await make_competition(session, rules, organizer)

        with pytest.raises(AuthorizationError):
            await EntryService(session, rules).join(player.id, competition.id, now=FIXED_NOW)

    async def test_insufficient_spendable_balance(self, session, rules):
        """Withdrawable money cannot pay an entry fee."""
        organizer = await make_account(session, "org")
        player = await make_account(session, "p1", spendable=10, withdrawable=1000)
        competition = await make_competition(session, rules, organizer)

        with pytest.raises(InsufficientFundsError):
            await EntryService(session, rules).join(player.id, competition.id, now=FIXED_NOW)
        assert competition.joined_count == 0


class TestTeamJoin:
    """Leader pays entry_fee x team size; every member is recorded."""

    async def test_duo_join(self, session, rules):
        organizer = await make_account(session, "org")
        leader = await make_account(session, "leader", spendable=200)
        mate = await make_account(session, "mate")
        competition = await make_competition(
            session, rules, organizer, mode=CompetitionMode.DUO, capacity=4
        )

        registration = await EntryService(session, rules).join(
            leader.id,
            competition.id,
            team_name="Wolves",
            member_ids=[mate.id],
            now=FIXED_NOW,
        )

        assert registration.amount_paid == 100
        assert leader.spendable_balance == 100
        assert mate.spendable_balance == 0
        assert competition.joined_count == 2
        assert competition.current_prize_pool == 80
        assert registration.member_ids == [leader.id, mate.id]
        assert await count(session, CompetitionParticipant, competition_id=competition.id) == 2

    async def test_squad_needs_four_players(self, session, rules):
        organizer = await make_account(session, "org")
        leader = await make_account(session, "leader", spendable=500)
        mates = [await make_account(session, f"m{i}") for i in range(2)]
        competition = await make_competition(
            session, rules, organizer, mode=CompetitionMode.SQUAD, capacity=8
        )

        with pytest.raises(ValidationError) as exc_info:
            await EntryService(session, rules).join(
                leader.id,
                competition.id,
                team_name="Trio",
                member_ids=[m.id for m in mates],
                now=FIXED_NOW,
            )
        assert exc_info.value.code == ErrorCode.INVALID_TEAM.value

    async def test_team_name_required(self, session, rules):
        organizer = await make_account(session, "org")
        leader = await make_account(session, "leader", spendable=200)
        mate = await make_account(session, "mate")
        competition = await make_competition(
            session, rules, organizer, mode=CompetitionMode.DUO, capacity=4
        )

        with pytest.raises(ValidationError):
            await EntryService(session, rules).join(
                leader.id, competition.id, member_ids=[mate.id], now=FIXED_NOW
            )

    async def test_member_already_in_other_team(self, session, rules):
        organizer = await make_account(session, "org")
        first = await make_account(session, "first", spendable=200)
        second = await make_account(session, "second", spendable=200)
        shared = await make_account(session, "shared")
        competition = await make_competition(
            session, rules, organizer, mode=CompetitionMode.DUO, capacity=4
        )
        entry = EntryService(session, rules)
        await entry.join(first.id, competition.id, team_name="A", member_ids=[shared.id], now=FIXED_NOW)

        with pytest.raises(StateConflictError) as exc_info:
            await entry.join(
                second.id, competition.id, team_name="B", member_ids=[shared.id], now=FIXED_NOW
            )
        assert exc_info.value.details["account_ids"] == [shared.id]
        assert second.spendable_balance == 200


class TestSoloExit:
    """Tests for exit with refund."""

    async def test_exit_refunds_and_frees_slot(self, session, rules):
        organizer = await make_account(session, "org")
        player = await make_account(session, "p1", spendable=50)
        competition = await make_competition(session, rules, organizer)
        entry = EntryService(session, rules)
        await entry.join(player.id, competition.id, now=FIXED_NOW)

        refund = await entry.exit(player.id, competition.id, now=FIXED_NOW)

        assert refund.kind is LedgerKind.REFUND
        assert refund.amount == 50
        assert player.spendable_balance == 50
        assert competition.joined_count == 0
        assert competition.current_prize_pool == 0
        assert await count(session, Registration, competition_id=competition.id) == 0
        assert await count(session, CompetitionParticipant, competition_id=competition.id) == 0

    async def test_exit_after_cutoff(self, session, rules):
        organizer = await make_account(session, "org")
        player = await make_account(session, "p1", spendable=50)
        competition = await make_competition(session, rules, organizer, start_in=timedelta(hours=1))
        entry = EntryService(session, rules)
        await entry.join(player.id, competition.id, now=FIXED_NOW)

        with pytest.raises(TimingError) as exc_info:
            await entry.exit(player.id, competition.id, now=FIXED_NOW + timedelta(minutes=31))
        assert exc_info.value.code == ErrorCode.EXIT_CLOSED.value
        assert player.spendable_balance == 0

    async def test_team_exit_is_never_allowed(self, session, rules):
        organizer = await make_account(session, "org")
        leader = await make_account(session, "leader", spendable=100)
        mate = await make_account(session, "mate")
        competition = await make_competition(
            session, rules, organizer, mode=CompetitionMode.DUO, capacity=4
        )
        entry = EntryService(session, rules)
        await entry.join(leader.id, competition.id, team_name="Duo", member_ids=[mate.id], now=FIXED_NOW)

        with pytest.raises(StateConflictError) as exc_info:
            await entry.exit(leader.id, competition.id, now=FIXED_NOW)
        assert exc_info.value.code == ErrorCode.TEAM_EXIT_NOT_ALLOWED.value

    async def test_exit_when_not_registered(self, session, rules):
        organizer = await make_account(session, "org")
        player = await make_account(session, "p1")
        competition = await make_competition(session, rules, organizer)

        with pytest.raises(StateConflictError) as exc_info:
            await EntryService(session, rules).exit(player.id, competition.id, now=FIXED_NOW)
        assert exc_info.value.code == ErrorCode.NOT_REGISTERED.value

    async def test_rejoin_after_exit(self, session, rules):
        organizer = await make_account(session, "org")
        player = await make_account(session, "p1", spendable=50)
        competition = await make_competition(session, rules, organizer)
        entry = EntryService(session, rules)
        await entry.join(player.id, competition.id, now=FIXED_NOW)
        await entry.exit(player.id, competition.id, now=FIXED_NOW)

        await entry.join(player.id, competition.id, now=FIXED_NOW)

        assert competition.joined_count == 1
        assert player.spendable_balance == 0
