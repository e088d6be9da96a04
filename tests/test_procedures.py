"""Tests for the atomic procedure layer.

Each procedure commits everything or nothing, reports errors as data,
writes audit rows for administrative actions and relays committed events.
"""

from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select

from arena_economy.actor import ROLE_ORGANIZER, Actor
from arena_economy.config import Settings
from arena_economy.models.audit import AuditLog, DomainEvent
from arena_economy.models.competition import Competition, CompetitionMode
from arena_economy.models.knockout import KnockoutRoom
from arena_economy.models.ledger import BalancePool, LedgerKind
from arena_economy.procedures import EconomyProcedures
from arena_economy.services.events import EventRelay
from arena_economy.services.ledger import LedgerService
from arena_economy.services.wallet import WalletService
from arena_economy.utils import redis_client
from tests.conftest import TEST_DATABASE_URL


class FakePipeline:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def xadd(self, name, fields, **kwargs):
        self.commands.append((name, fields, kwargs))

    async def execute(self):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return [f"{i}-0" for i in range(len(self.commands))]


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.pipe = FakePipeline(fail=fail)
        self.closed = False

    def pipeline(self, transaction: bool = True):
        return self.pipe

    async def aclose(self):
        self.closed = True


async def open_funded(procedures, nickname, spendable=0):
    opened = await procedures.open_account(nickname)
    account_id = opened["account_id"]
    if spendable:
        await procedures.credit_deposit(account_id, spendable, f"dep-{nickname}")
    return account_id


async def finished_competition(procedures, clock, *, players=2, distribution=None):
    """Create, fill, start and complete a solo competition; clock ends in the dispute window."""
    organizer = Actor(account_id=await open_funded(procedures, "org"), roles={ROLE_ORGANIZER})
    created = await procedures.create_competition(
        organizer,
        title="Evening Clash",
        mode=CompetitionMode.SOLO,
        capacity=2,
        entry_fee=50,
        start_time=clock.now + timedelta(hours=2),
        prize_distribution=distribution or {1: 40},
    )
    competition_id = created["competition_id"]
    player_ids = []
    for index in range(players):
        player_id = await open_funded(procedures, f"p{index}", spendable=50)
        joined = await procedures.join_competition(Actor(account_id=player_id), competition_id)
        assert joined["success"] is True
        player_ids.append(player_id)

    await procedures.set_match_credentials(organizer, competition_id, "room-77", "pw")
    clock.advance(hours=2)
    started = await procedures.start_competition(organizer, competition_id)
    assert started["success"] is True
    clock.advance(hours=1)
    await procedures.complete_competition(organizer, competition_id)
    return organizer, competition_id, player_ids


async def audit_rows(session_factory, action):
    async with session_factory() as session:
        result = await session.execute(select(AuditLog).where(AuditLog.action == action))
        return list(result.scalars().all())


class TestResultShape:
    async def test_success_envelope(self, procedures):
        result = await procedures.open_account("alice")

        assert result["success"] is True
        assert result["spendable"] == 0

    async def test_error_envelope(self, procedures):
        result = await procedures.get_balances("missing")

        assert result == {
            "success": False,
            "error": {
                "kind": "NotFoundError",
                "code": "ACCOUNT_NOT_FOUND",
                "message": "Account not found: missing",
                "details": {"account_id": "missing"},
            },
        }

    async def test_unexpected_exception_becomes_internal_error(self, procedures, monkeypatch):
        account_id = await open_funded(procedures, "bob")

        async def broken(self, account_id):
            raise RuntimeError("boom")

        monkeypatch.setattr(WalletService, "get_balances", broken)
        result = await procedures.get_balances(account_id)

        assert result["success"] is False
        assert result["error"]["kind"] == "InternalError"
        assert result["error"]["code"] == "INTERNAL_ERROR"
        assert "boom" not in result["error"]["message"]


class TestAtomicity:
    async def test_failed_join_leaves_no_trace(self, procedures, session_factory, clock):
        organizer = Actor(account_id=await open_funded(procedures, "org"), roles={ROLE_ORGANIZER})
        created = await procedures.create_competition(
            organizer,
            title="Broke Lobby",
            mode=CompetitionMode.SOLO,
            capacity=2,
            entry_fee=50,
            start_time=clock.now + timedelta(hours=1),
            prize_distribution={1: 40},
        )
        poor = await open_funded(procedures, "poor", spendable=20)

        result = await procedures.join_competition(Actor(account_id=poor), created["competition_id"])

        assert result["error"]["code"] == "INSUFFICIENT_BALANCE"
        async with session_factory() as session:
            competition = await session.get(Competition, created["competition_id"])
            assert competition.joined_count == 0
            assert competition.current_prize_pool == 0
        assert (await procedures.get_balances(poor))["spendable"] == 20

    async def test_payout_failure_rolls_back_every_credit(
        self, procedures, clock, monkeypatch
    ):
        organizer, competition_id, (first, second) = await finished_competition(
            procedures, clock, distribution={1: 30, 2: 10}
        )
        clock.advance(minutes=30)

        original_post = LedgerService.post
        prize_posts = {"count": 0}

        async def flaky_post(self, account, kind, pool, amount, **kwargs):
            if kind is LedgerKind.PRIZE:
                prize_posts["count"] += 1
                if prize_posts["count"] == 2:
                    raise RuntimeError("connection lost mid-payout")
            return await original_post(self, account, kind, pool, amount, **kwargs)

        monkeypatch.setattr(LedgerService, "post", flaky_post)
        failed = await procedures.declare_winners(organizer, competition_id, {first: 1, second: 2})

        assert failed["success"] is False
        assert failed["error"]["code"] == "INTERNAL_ERROR"
        assert (await procedures.get_balances(first))["withdrawable"] == 0
        assert (await procedures.get_balances(organizer.account_id))["withdrawable"] == 0

        monkeypatch.undo()
        declared = await procedures.declare_winners(organizer, competition_id, {first: 1, second: 2})

        assert declared["success"] is True
        assert declared["total_paid"] == 40
        assert declared["organizer_commission"] == 10
        assert (await procedures.get_balances(first))["withdrawable"] == 30
        assert (await procedures.get_balances(second))["withdrawable"] == 10
        for account_id in (first, second, organizer.account_id):
            assert (await procedures.verify_account(account_id))["consistent"] is True


class TestAuditTrail:
    async def test_adjust_success_audited_in_same_transaction(
        self, procedures, session_factory, admin
    ):
        account_id = await open_funded(procedures, "carol")

        result = await procedures.adjust_balance(
            admin, account_id, 300, BalancePool.WITHDRAWABLE, "tournament payout fix"
        )

        assert result["withdrawable"] == 300
        (row,) = await audit_rows(session_factory, "wallet.adjust")
        assert row.outcome == "success"
        assert row.actor_account_id == admin.account_id
        assert row.context == {"delta": 300, "pool": "withdrawable"}

    async def test_rejected_adjust_still_audited(self, procedures, session_factory, admin):
        account_id = await open_funded(procedures, "dave", spendable=10)

        result = await procedures.adjust_balance(
            admin, account_id, -50, BalancePool.SPENDABLE, "clawback"
        )

        assert result["error"]["kind"] == "InsufficientFundsError"
        (row,) = await audit_rows(session_factory, "wallet.adjust")
        assert row.outcome == "failure"
        assert row.context["error_code"] == "INSUFFICIENT_BALANCE"
        assert (await procedures.get_balances(account_id))["spendable"] == 10

    async def test_withdrawal_reject_flow(self, procedures, session_factory, admin):
        account_id = await open_funded(procedures, "erin")
        await procedures.adjust_balance(admin, account_id, 500, BalancePool.WITHDRAWABLE, "prize")
        player = Actor(account_id=account_id)

        requested = await procedures.request_withdrawal(player, 500, "typo@upi")
        pending = await procedures.pending_withdrawals(admin)
        rejected = await procedures.reject_withdrawal(
            admin, requested["withdrawal_id"], "UPI id not found"
        )

        assert requested["withdrawable"] == 0
        assert [r["withdrawal_id"] for r in pending["requests"]] == [requested["withdrawal_id"]]
        assert rejected["refunded"] == 500
        assert rejected["withdrawable"] == 500
        (row,) = await audit_rows(session_factory, "withdrawal.reject")
        assert row.reason == "UPI id not found"

    async def test_pending_queue_is_admin_only(self, procedures):
        account_id = await open_funded(procedures, "frank")

        result = await procedures.pending_withdrawals(Actor(account_id=account_id))

        assert result["error"]["kind"] == "AuthorizationError"


class TestAutoCancelSweep:
    async def test_overdue_competition_refunded(self, procedures, session_factory, clock):
        _, competition_id, players = await finished_competition(procedures, clock)

        assert (await procedures.auto_cancel_overdue())["processed"] == 0

        clock.advance(minutes=60)
        sweep = await procedures.auto_cancel_overdue()

        assert sweep["processed"] == 1
        assert sweep["results"][0]["competition_id"] == competition_id
        assert sweep["results"][0]["refunded_count"] == 2
        for player_id in players:
            assert (await procedures.get_balances(player_id))["spendable"] == 50
        (row,) = await audit_rows(session_factory, "competition.auto_cancel")
        assert row.actor_account_id is None
        assert row.outcome == "success"


class TestEventRelay:
    async def test_committed_events_are_published(self, session_factory, rules, clock, admin):
        redis = FakeRedis()
        procedures = EconomyProcedures(
            session_factory, rules, relay=EventRelay(redis, stream_key="test:events"), clock=clock
        )
        account_id = await open_funded(procedures, "gina")
        await procedures.adjust_balance(admin, account_id, 500, BalancePool.WITHDRAWABLE, "prize")
        requested = await procedures.request_withdrawal(Actor(account_id=account_id), 200, "g@upi")

        await procedures.reject_withdrawal(admin, requested["withdrawal_id"], "closed account")

        ((stream, fields, options),) = redis.pipe.commands
        assert stream == "test:events"
        assert fields["event_type"] == "withdrawal.rejected"
        assert options == {"maxlen": 100_000, "approximate": True}
        async with session_factory() as session:
            event = (await session.execute(select(DomainEvent))).scalar_one()
            assert event.published_at is not None

    async def test_relay_outage_does_not_fail_procedure(self, session_factory, rules, clock, admin):
        procedures = EconomyProcedures(
            session_factory, rules, relay=EventRelay(FakeRedis(fail=True)), clock=clock
        )
        account_id = await open_funded(procedures, "hank")
        await procedures.adjust_balance(admin, account_id, 500, BalancePool.WITHDRAWABLE, "prize")
        requested = await procedures.request_withdrawal(Actor(account_id=account_id), 200, "h@upi")

        result = await procedures.reject_withdrawal(admin, requested["withdrawal_id"], "fraud check")

        assert result["success"] is True
        async with session_factory() as session:
            event = (await session.execute(select(DomainEvent))).scalar_one()
            assert event.published_at is None


class TestKnockoutPrizes:
    async def test_unfunded_payout_rolls_back_then_succeeds(self, procedures, session_factory):
        organizer = Actor(account_id=await open_funded(procedures, "org"), roles={ROLE_ORGANIZER})
        alpha_leader = await open_funded(procedures, "alpha")
        beta_leader = await open_funded(procedures, "beta")
        created = await procedures.create_knockout(
            organizer,
            name="Campus Cup",
            game="duel",
            max_players=8,
            tournament_date=procedures.clock() + timedelta(days=1),
        )
        tournament_id = created["tournament_id"]
        alpha = await procedures.register_team(Actor(account_id=alpha_leader), tournament_id, "Alpha")
        beta = await procedures.register_team(Actor(account_id=beta_leader), tournament_id, "Beta")
        await procedures.start_round(organizer, tournament_id, 1)
        async with session_factory() as session:
            room_id = (await session.execute(select(KnockoutRoom.id))).scalar_one()
        await procedures.set_room_credentials(organizer, room_id, "LOBBY-1")
        await procedures.declare_room_winner(organizer, room_id, alpha["team_id"])
        await procedures.declare_final_winners(organizer, tournament_id, [alpha["team_id"], beta["team_id"]])

        unfunded = await procedures.distribute_prizes(organizer, tournament_id, {1: 90, 2: 30})
        await procedures.credit_deposit(organizer.account_id, 200, "dep-org-prizes")
        paid = await procedures.distribute_prizes(organizer, tournament_id, {1: 90, 2: 30})

        assert unfunded["success"] is False
        assert unfunded["error"]["kind"] == "InsufficientFundsError"
        assert paid["success"] is True
        assert paid["total_paid"] == 120
        assert (await procedures.get_balances(alpha_leader))["withdrawable"] == 90
        assert (await procedures.get_balances(beta_leader))["withdrawable"] == 30
        assert (await procedures.get_balances(organizer.account_id))["spendable"] == 80
        rows = await audit_rows(session_factory, "knockout.distribute_prizes")
        assert sorted(row.outcome for row in rows) == ["failure", "success"]
        for account_id in (alpha_leader, beta_leader, organizer.account_id):
            assert (await procedures.verify_account(account_id))["consistent"] is True


class TestFromSettings:
    async def test_relay_built_from_redis_settings(self, session_factory, clock, admin, monkeypatch):
        redis = FakeRedis()
        monkeypatch.setattr(redis_client, "redis_client", redis)
        settings = Settings(
            app_env="test",
            database_url=TEST_DATABASE_URL,
            redis_url="redis://localhost:6379/5",
            event_stream_key="arena:test-events",
            event_stream_max_len=500,
        )

        procedures = await EconomyProcedures.from_settings(
            settings, session_factory, configure_logs=False, clock=clock
        )
        account_id = await open_funded(procedures, "ivy")
        await procedures.adjust_balance(admin, account_id, 500, BalancePool.WITHDRAWABLE, "prize")
        requested = await procedures.request_withdrawal(Actor(account_id=account_id), 200, "i@upi")
        await procedures.reject_withdrawal(admin, requested["withdrawal_id"], "duplicate request")

        assert procedures.rules == settings.economy
        ((stream, fields, options),) = redis.pipe.commands
        assert stream == "arena:test-events"
        assert fields["event_type"] == "withdrawal.rejected"
        assert options == {"maxlen": 500, "approximate": True}

    async def test_without_redis_url_events_stay_in_outbox(self, session_factory):
        settings = Settings(app_env="test", database_url=TEST_DATABASE_URL, redis_url=None)

        procedures = await EconomyProcedures.from_settings(settings, session_factory, configure_logs=False)

        assert procedures.relay is None
        assert await procedures.publish_events() == 0

    async def test_close_redis_drops_client(self, monkeypatch):
        fake = FakeRedis()
        monkeypatch.setattr(redis_client, "redis_client", fake)

        await redis_client.close_redis()

        assert fake.closed is True
        assert redis_client.get_redis() is None


@pytest.mark.parametrize("game,rounds", [("BGMI", 2), ("free_fire", 3)])
def test_calculate_structure_procedure(rules, game, rounds):
    result = EconomyProcedures(session_factory=None, rules=rules).calculate_structure(game, 1000)

    assert result["success"] is True
    assert result["structure"]["total_rounds"] == rounds
