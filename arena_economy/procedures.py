"""Atomic economy procedures.

The trust boundary for callers. Each procedure:
- runs in exactly one database transaction (all-or-nothing)
- returns ``{"success": True, ...summary}`` or
  ``{"success": False, "error": {"kind", "code", "message", "details"}}``
- never hands out ORM rows, only computed summaries

Administrative financial actions are audited inside the transaction on
success and in a separate transaction on failure.

Usage:
    procedures = await EconomyProcedures.from_settings(get_settings())
    result = await procedures.join_competition(actor, competition_id)
"""

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from arena_economy.actor import Actor
from arena_economy.config import EconomyRules, Settings
from arena_economy.logging_config import configure_logging, get_logger, procedure_context
from arena_economy.models.competition import Competition, CompetitionMode
from arena_economy.models.ledger import BalancePool
from arena_economy.services.audit import OUTCOME_FAILURE, OUTCOME_SUCCESS, AuditService
from arena_economy.services.cancellation import CancellationService
from arena_economy.services.entry import EntryService
from arena_economy.services.events import EventRelay
from arena_economy.services.ledger import LedgerService
from arena_economy.services.wallet import WalletService
from arena_economy.services.withdrawal import WithdrawalService
from arena_economy.tournament.bracket import KnockoutEngine
from arena_economy.tournament.settlement import SettlementService
from arena_economy.tournament.structure import calculate_structure
from arena_economy.utils.db import create_engine, create_session_factory, session_scope
from arena_economy.utils.errors import EngineError, ErrorCode, ErrorKind
from arena_economy.utils.redis_client import create_event_relay
from arena_economy.utils.timeutil import utcnow

logger = get_logger(__name__)

Result = dict[str, Any]
Work = Callable[[AsyncSession], Awaitable[Result]]


@dataclass
class AuditSpec:
    """What to write to the audit log for one administrative call."""

    action: str
    actor: Actor
    target_id: str | None
    reason: str | None
    context: dict[str, Any] = field(default_factory=dict)


def _internal_error() -> Result:
    return {
        "kind": ErrorKind.INTERNAL.value,
        "code": ErrorCode.INTERNAL_ERROR.value,
        "message": "Internal error, nothing was changed",
        "details": {},
    }


class EconomyProcedures:
    """Every engine operation as one atomic call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rules: EconomyRules,
        relay: EventRelay | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ):
        self.session_factory = session_factory
        self.rules = rules
        self.relay = relay
        self.clock = clock or utcnow
        self.rng = rng

    @classmethod
    async def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        configure_logs: bool = True,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> "EconomyProcedures":
        """Wire logging, the database and the Redis event relay from settings.

        Without ``redis_url`` the outbox only fills up; nothing is relayed.
        """
        if configure_logs:
            configure_logging(settings.log_level, settings.json_logs, settings.app_env)
        if session_factory is None:
            session_factory = create_session_factory(create_engine(settings))
        relay = await create_event_relay(settings)
        logger.info("procedures_ready", relay_enabled=relay is not None)
        return cls(session_factory, settings.economy, relay=relay, clock=clock, rng=rng)

    # =========================================================================
    # Transaction runner
    # =========================================================================

    async def _run(
        self,
        procedure: str,
        work: Work,
        *,
        actor: Actor | None = None,
        audit: AuditSpec | None = None,
    ) -> Result:
        with procedure_context(procedure, actor.account_id if actor else None):
            try:
                async with session_scope(self.session_factory) as session:
                    result = await work(session)
                    if audit is not None:
                        await AuditService(session).record(
                            actor_account_id=audit.actor.account_id,
                            action=audit.action,
                            target_id=audit.target_id,
                            reason=audit.reason,
                            outcome=OUTCOME_SUCCESS,
                            context=audit.context,
                        )
            except EngineError as exc:
                logger.info(
                    "procedure_rejected",
                    kind=exc.kind.value,
                    code=exc.code,
                    message=exc.message,
                )
                await self._audit_failure(audit, exc.code)
                return {"success": False, "error": exc.to_dict()}
            except Exception:
                logger.exception("procedure_failed")
                await self._audit_failure(audit, ErrorCode.INTERNAL_ERROR.value)
                return {"success": False, "error": _internal_error()}

            await self.publish_events()
            return {"success": True, **result}

    async def _audit_failure(self, audit: AuditSpec | None, error_code: str) -> None:
        """Persist the attempt even though the business transaction rolled back."""
        if audit is None:
            return
        try:
            async with session_scope(self.session_factory) as session:
                await AuditService(session).record(
                    actor_account_id=audit.actor.account_id,
                    action=audit.action,
                    target_id=audit.target_id,
                    reason=audit.reason,
                    outcome=OUTCOME_FAILURE,
                    context={**audit.context, "error_code": error_code},
                )
        except Exception:
            logger.exception("audit_write_failed", action=audit.action, target_id=audit.target_id)

    async def publish_events(self) -> int:
        """Relay committed domain events, if a relay is configured."""
        if self.relay is None:
            return 0
        try:
            async with session_scope(self.session_factory) as session:
                return await self.relay.publish_pending(session)
        except RedisError:
            logger.warning("domain_event_relay_failed", exc_info=True)
            return 0

    # =========================================================================
    # Wallet
    # =========================================================================

    async def open_account(self, nickname: str, account_id: str | None = None) -> Result:
        async def work(session: AsyncSession) -> Result:
            account = await WalletService(session).open_account(nickname, account_id)
            return {"account_id": account.id, "spendable": 0, "withdrawable": 0}

        return await self._run("open_account", work)

    async def get_balances(self, account_id: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            return await WalletService(session).get_balances(account_id)

        return await self._run("get_balances", work)

    async def adjust_balance(
        self,
        actor: Actor,
        account_id: str,
        delta: int,
        pool: BalancePool,
        reason: str | None,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            wallet = WalletService(session)
            entry = await wallet.adjust(actor, account_id, delta, pool, reason)
            return {
                "entry_id": entry.id,
                "pool": pool.value,
                "delta": delta,
                **await wallet.get_balances(account_id),
            }

        audit = AuditSpec(
            action="wallet.adjust",
            actor=actor,
            target_id=account_id,
            reason=reason,
            context={"delta": delta, "pool": pool.value},
        )
        return await self._run("adjust_balance", work, actor=actor, audit=audit)

    async def credit_deposit(
        self,
        account_id: str,
        amount: int,
        external_ref: str,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            wallet = WalletService(session)
            entry, created = await wallet.credit_deposit(account_id, amount, external_ref)
            return {
                "entry_id": entry.id,
                "credited": created,
                **await wallet.get_balances(account_id),
            }

        return await self._run("credit_deposit", work)

    async def set_account_flags(
        self,
        actor: Actor,
        account_id: str,
        *,
        frozen: bool | None = None,
        banned: bool | None = None,
        reason: str | None = None,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            account = await WalletService(session).set_flags(
                actor, account_id, frozen=frozen, banned=banned, reason=reason
            )
            return {
                "account_id": account.id,
                "frozen": account.is_frozen,
                "banned": account.is_banned,
            }

        audit = AuditSpec(
            action="account.set_flags",
            actor=actor,
            target_id=account_id,
            reason=reason,
            context={"frozen": frozen, "banned": banned},
        )
        return await self._run("set_account_flags", work, actor=actor, audit=audit)

    async def verify_account(self, account_id: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            return await LedgerService(session).verify_account(account_id)

        return await self._run("verify_account", work)

    # =========================================================================
    # Competitions
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
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            competition = await EntryService(session, self.rules).create_competition(
                actor,
                title=title,
                mode=mode,
                capacity=capacity,
                entry_fee=entry_fee,
                start_time=start_time,
                prize_distribution=prize_distribution,
                game=game,
                now=self.clock(),
            )
            return {
                "competition_id": competition.id,
                "status": competition.status.value,
                "estimated_prize_pool": competition.estimated_prize_pool,
            }

        return await self._run("create_competition", work, actor=actor)

    async def join_competition(
        self,
        actor: Actor,
        competition_id: str,
        *,
        team_name: str | None = None,
        member_ids: list[str] | None = None,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            entry = EntryService(session, self.rules)
            registration = await entry.join(
                actor.account_id,
                competition_id,
                team_name=team_name,
                member_ids=member_ids,
                now=self.clock(),
            )
            competition = await session.get(Competition, competition_id)
            balances = await WalletService(session).get_balances(actor.account_id)
            return {
                "registration_id": registration.id,
                "amount_paid": registration.amount_paid,
                "spendable": balances["spendable"],
                "joined_count": competition.joined_count,
                "current_prize_pool": competition.current_prize_pool,
            }

        return await self._run("join_competition", work, actor=actor)

    async def exit_competition(self, actor: Actor, competition_id: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            refund = await EntryService(session, self.rules).exit(
                actor.account_id, competition_id, now=self.clock()
            )
            balances = await WalletService(session).get_balances(actor.account_id)
            return {
                "refunded": refund.amount if refund else 0,
                "spendable": balances["spendable"],
            }

        return await self._run("exit_competition", work, actor=actor)

    async def set_match_credentials(
        self,
        actor: Actor,
        competition_id: str,
        room_id: str,
        password: str | None = None,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            competition = await SettlementService(session, self.rules).set_match_credentials(
                actor, competition_id, room_id, password
            )
            return {"competition_id": competition.id, "match_room_id": competition.match_room_id}

        return await self._run("set_match_credentials", work, actor=actor)

    async def start_competition(self, actor: Actor, competition_id: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            competition = await SettlementService(session, self.rules).start(
                actor, competition_id, now=self.clock()
            )
            return {
                "competition_id": competition.id,
                "status": competition.status.value,
                "participants": competition.joined_count,
                "prize_pool": competition.current_prize_pool,
            }

        return await self._run("start_competition", work, actor=actor)

    async def complete_competition(self, actor: Actor, competition_id: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            competition = await SettlementService(session, self.rules).complete(
                actor, competition_id, now=self.clock()
            )
            return {"competition_id": competition.id, "status": competition.status.value}

        return await self._run("complete_competition", work, actor=actor)

    async def declare_winners(
        self,
        actor: Actor,
        competition_id: str,
        positions: dict[str, int],
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            summary = await SettlementService(session, self.rules).declare_winners(
                actor, competition_id, positions, now=self.clock()
            )
            return summary.to_dict()

        return await self._run("declare_winners", work, actor=actor)

    async def estimate_payouts(self, competition_id: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            return await SettlementService(session, self.rules).estimate_payouts(competition_id)

        return await self._run("estimate_payouts", work)

    async def cancel_competition(
        self,
        actor: Actor,
        competition_id: str,
        reason: str | None,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            result = await CancellationService(session, self.rules).cancel(
                actor, competition_id, reason, now=self.clock()
            )
            return result.to_dict()

        audit = AuditSpec(
            action="competition.cancel",
            actor=actor,
            target_id=competition_id,
            reason=reason,
        )
        return await self._run("cancel_competition", work, actor=actor, audit=audit)

    async def auto_cancel_overdue(self) -> Result:
        """Cancel every overdue competition, one transaction each."""
        now = self.clock()
        async with self.session_factory() as session:
            overdue = await CancellationService(session, self.rules).find_overdue(now)

        system = Actor.system()
        results = []
        for competition_id in overdue:
            async def work(session: AsyncSession, competition_id: str = competition_id) -> Result:
                result = await CancellationService(session, self.rules).auto_cancel(
                    competition_id, now=now
                )
                return result.to_dict()

            audit = AuditSpec(
                action="competition.auto_cancel",
                actor=system,
                target_id=competition_id,
                reason="winners not declared in time",
            )
            outcome = await self._run("auto_cancel", work, actor=system, audit=audit)
            results.append({"competition_id": competition_id, **outcome})

        logger.info(
            "auto_cancel_sweep_finished",
            overdue=len(overdue),
            cancelled=sum(1 for r in results if r["success"]),
        )
        return {"success": True, "processed": len(results), "results": results}

    # =========================================================================
    # Withdrawals
    # =========================================================================

    async def request_withdrawal(self, actor: Actor, amount: int, destination: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            entry = await WithdrawalService(session, self.rules).request(
                actor.account_id, amount, destination
            )
            return {
                "withdrawal_id": entry.id,
                "amount": amount,
                "status": entry.status.value,
                "withdrawable": entry.balance_after,
            }

        return await self._run("request_withdrawal", work, actor=actor)

    async def approve_withdrawal(
        self,
        actor: Actor,
        withdrawal_id: str,
        note: str | None = None,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            entry = await WithdrawalService(session, self.rules).approve(
                actor, withdrawal_id, note=note, now=self.clock()
            )
            return {"withdrawal_id": entry.id, "status": entry.status.value}

        audit = AuditSpec(
            action="withdrawal.approve",
            actor=actor,
            target_id=withdrawal_id,
            reason=note,
        )
        return await self._run("approve_withdrawal", work, actor=actor, audit=audit)

    async def reject_withdrawal(
        self,
        actor: Actor,
        withdrawal_id: str,
        reason: str | None,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            refund = await WithdrawalService(session, self.rules).reject(
                actor, withdrawal_id, reason, now=self.clock()
            )
            return {
                "withdrawal_id": withdrawal_id,
                "status": "rejected",
                "refunded": refund.amount,
                "withdrawable": refund.balance_after,
            }

        audit = AuditSpec(
            action="withdrawal.reject",
            actor=actor,
            target_id=withdrawal_id,
            reason=reason,
        )
        return await self._run("reject_withdrawal", work, actor=actor, audit=audit)

    async def pending_withdrawals(self, actor: Actor, limit: int = 50, offset: int = 0) -> Result:
        async def work(session: AsyncSession) -> Result:
            actor.require_admin()
            entries = await WithdrawalService(session, self.rules).pending_requests(
                limit=limit, offset=offset
            )
            return {
                "requests": [
                    {
                        "withdrawal_id": e.id,
                        "account_id": e.account_id,
                        "amount": -e.amount,
                        "destination": e.destination,
                        "requested_at": e.created_at.isoformat(),
                    }
                    for e in entries
                ]
            }

        return await self._run("pending_withdrawals", work, actor=actor)

    # =========================================================================
    # Knockout brackets
    # =========================================================================

    def calculate_structure(self, game: str, max_players: int) -> Result:
        try:
            structure = calculate_structure(self.rules.room_size_for(game), max_players)
        except EngineError as exc:
            return {"success": False, "error": exc.to_dict()}
        return {"success": True, "structure": structure.to_dict()}

    def _knockout(self, session: AsyncSession) -> KnockoutEngine:
        return KnockoutEngine(session, self.rules, rng=self.rng)

    async def create_knockout(
        self,
        actor: Actor,
        *,
        name: str,
        game: str,
        max_players: int,
        tournament_date: datetime,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            tournament = await self._knockout(session).create_tournament(
                actor,
                name=name,
                game=game,
                max_players=max_players,
                tournament_date=tournament_date,
            )
            return {
                "tournament_id": tournament.id,
                "teams_per_room": tournament.teams_per_room,
                "total_rounds": tournament.total_rounds,
                "status": tournament.status_label,
            }

        return await self._run("create_knockout", work, actor=actor)

    async def register_team(
        self,
        actor: Actor,
        tournament_id: str,
        name: str,
        member_ids: list[str] | None = None,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            team = await self._knockout(session).register_team(
                tournament_id, actor.account_id, name, member_ids
            )
            return {"team_id": team.id, "members": len(team.member_ids)}

        return await self._run("register_team", work, actor=actor)

    async def start_round(self, actor: Actor, tournament_id: str, round_number: int) -> Result:
        async def work(session: AsyncSession) -> Result:
            result = await self._knockout(session).start_round(
                actor, tournament_id, round_number, now=self.clock()
            )
            return result.to_dict()

        return await self._run("start_round", work, actor=actor)

    async def set_room_credentials(
        self,
        actor: Actor,
        room_id: str,
        room_code: str,
        password: str | None = None,
        scheduled_time: datetime | None = None,
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            room = await self._knockout(session).set_room_credentials(
                actor, room_id, room_code, password, scheduled_time
            )
            return {"room_id": room.id, "status": room.status.value}

        return await self._run("set_room_credentials", work, actor=actor)

    async def declare_room_winner(self, actor: Actor, room_id: str, winner_team_id: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            return await self._knockout(session).declare_room_winner(actor, room_id, winner_team_id)

        return await self._run("declare_room_winner", work, actor=actor)

    async def forfeit_team(self, actor: Actor, team_id: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            team = await self._knockout(session).forfeit_team(actor, team_id)
            return {"team_id": team.id, "eliminated_in_round": team.eliminated_in_round}

        return await self._run("forfeit_team", work, actor=actor)

    async def round_progress(self, tournament_id: str, round_number: int | None = None) -> Result:
        async def work(session: AsyncSession) -> Result:
            return await self._knockout(session).round_progress(tournament_id, round_number)

        return await self._run("round_progress", work)

    async def declare_final_winners(
        self,
        actor: Actor,
        tournament_id: str,
        ranked_team_ids: list[str],
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            tournament = await self._knockout(session).declare_final_winners(
                actor, tournament_id, ranked_team_ids, now=self.clock()
            )
            return {"tournament_id": tournament.id, "status": tournament.status_label}

        return await self._run("declare_final_winners", work, actor=actor)

    async def distribute_prizes(
        self,
        actor: Actor,
        tournament_id: str,
        distribution: dict[int, int],
    ) -> Result:
        async def work(session: AsyncSession) -> Result:
            return await self._knockout(session).distribute_prizes(
                actor, tournament_id, distribution, now=self.clock()
            )

        audit = AuditSpec(
            action="knockout.distribute_prizes",
            actor=actor,
            target_id=tournament_id,
            reason=None,
            context={"distribution": {str(rank): amount for rank, amount in distribution.items()}},
        )
        return await self._run("distribute_prizes", work, actor=actor, audit=audit)

    async def knockout_stats(self, tournament_id: str) -> Result:
        async def work(session: AsyncSession) -> Result:
            return await self._knockout(session).get_stats(tournament_id)

        return await self._run("knockout_stats", work)
