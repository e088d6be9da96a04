"""Create economy engine tables.

Revision ID: economy_engine_001
Revises:
Create Date: 2026-10-17

This migration adds:
- accounts: two-pool wallets (spendable / withdrawable)
- ledger_entries: append-only tagged ledger
- competitions, registrations, competition_participants
- knockout_tournaments, knockout_teams, knockout_rooms, room_assignments
- audit_logs, domain_events (outbox)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "economy_engine_001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create all economy tables."""
    ledger_kind = sa.Enum(
        "deposit", "entry_fee", "refund", "prize", "withdrawal",
        "admin_credit", "admin_debit", "commission", "prize_funding",
        name="ledgerkind",
    )
    balance_pool = sa.Enum("spendable", "withdrawable", name="balancepool")
    ledger_status = sa.Enum("pending", "completed", "failed", "rejected", name="ledgerstatus")
    competition_mode = sa.Enum("solo", "duo", "squad", name="competitionmode")
    competition_status = sa.Enum("upcoming", "ongoing", "completed", "cancelled", name="competitionstatus")
    bracket_phase = sa.Enum("registration", "in_round", "finale", "completed", name="bracketphase")
    room_status = sa.Enum("waiting", "credentials_set", "completed", name="roomstatus")

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("nickname", sa.String(50), nullable=False, index=True),
        sa.Column("spendable_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("withdrawable_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("is_frozen", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_banned", sa.Boolean(), nullable=False, server_default="false"),
        *_timestamps(),
        sa.CheckConstraint("spendable_balance >= 0", name="ck_accounts_spendable_non_negative"),
        sa.CheckConstraint("withdrawable_balance >= 0", name="ck_accounts_withdrawable_non_negative"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("kind", ledger_kind, nullable=False, index=True),
        sa.Column("pool", balance_pool, nullable=False),
        sa.Column("status", ledger_status, nullable=False, index=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("balance_before", sa.BigInteger(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("related_entity_id", sa.String(36), nullable=True, index=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("destination", sa.String(200), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_ref", sa.String(100), nullable=True, unique=True),
        sa.Column("integrity_hash", sa.String(64), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "competitions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("organizer_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("game", sa.String(50), nullable=False),
        sa.Column("mode", competition_mode, nullable=False),
        sa.Column("status", competition_status, nullable=False, index=True),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("joined_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("entry_fee", sa.BigInteger(), nullable=False),
        sa.Column("estimated_prize_pool", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("current_prize_pool", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("prize_distribution", sa.JSON(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("match_room_id", sa.String(100), nullable=True),
        sa.Column("match_room_password", sa.String(100), nullable=True),
        sa.Column("pool_locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("winner_declared_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_prize_paid", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("joined_count <= capacity", name="ck_competitions_capacity"),
        sa.CheckConstraint("current_prize_pool >= 0", name="ck_competitions_pool_non_negative"),
    )

    op.create_table(
        "registrations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("competition_id", sa.String(36), sa.ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("team_name", sa.String(100), nullable=True),
        sa.Column("amount_paid", sa.BigInteger(), nullable=False),
        sa.Column("fee_entry_id", sa.String(36), sa.ForeignKey("ledger_entries.id", ondelete="SET NULL"), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("competition_id", "team_name", name="uq_registrations_team_name"),
    )

    op.create_table(
        "competition_participants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("competition_id", sa.String(36), sa.ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("registration_id", sa.String(36), sa.ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.UniqueConstraint("competition_id", "account_id", name="uq_participants_competition_account"),
    )

    op.create_table(
        "knockout_tournaments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("organizer_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("game", sa.String(50), nullable=False),
        sa.Column("max_players", sa.Integer(), nullable=False),
        sa.Column("teams_per_room", sa.Integer(), nullable=False),
        sa.Column("total_rounds", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("phase", bracket_phase, nullable=False, index=True),
        sa.Column("current_round", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("registered_players", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tournament_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("prizes_distributed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_prize_paid", sa.BigInteger(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "knockout_teams",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tournament_id", sa.String(36), sa.ForeignKey("knockout_tournaments.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("leader_id", sa.String(36), sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("member_ids", sa.JSON(), nullable=False),
        sa.Column("current_round", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_eliminated", sa.Boolean(), nullable=False, server_default="false", index=True),
        sa.Column("eliminated_in_round", sa.Integer(), nullable=True),
        sa.Column("forfeited", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("final_rank", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tournament_id", "name", name="uq_knockout_teams_name"),
    )

    op.create_table(
        "knockout_rooms",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tournament_id", sa.String(36), sa.ForeignKey("knockout_tournaments.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("room_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("room_code", sa.String(100), nullable=True),
        sa.Column("room_password", sa.String(100), nullable=True),
        sa.Column("status", room_status, nullable=False),
        sa.Column("winner_team_id", sa.String(36), sa.ForeignKey("knockout_teams.id", ondelete="SET NULL"), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tournament_id", "round_number", "room_number", name="uq_knockout_rooms_slot"),
    )

    op.create_table(
        "room_assignments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tournament_id", sa.String(36), sa.ForeignKey("knockout_tournaments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("room_id", sa.String(36), sa.ForeignKey("knockout_rooms.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("team_id", sa.String(36), sa.ForeignKey("knockout_teams.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("slot_number", sa.Integer(), nullable=False),
        sa.Column("is_winner", sa.Boolean(), nullable=False, server_default="false"),
        sa.UniqueConstraint("tournament_id", "round_number", "team_id", name="uq_assignments_team_round"),
        sa.UniqueConstraint("room_id", "team_id", name="uq_assignments_room_team"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("actor_account_id", sa.String(36), nullable=True, index=True),
        sa.Column("action", sa.String(50), nullable=False, index=True),
        sa.Column("target_id", sa.String(36), nullable=True, index=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("outcome", sa.String(20), nullable=False, comment="success | failure"),
        sa.Column("context", sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "domain_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("event_type", sa.String(60), nullable=False, index=True),
        sa.Column("aggregate_id", sa.String(36), nullable=False, index=True),
        sa.Column("recipient_ids", sa.JSON(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True, index=True),
        *_timestamps(),
    )


def downgrade() -> None:
    """Drop all economy tables."""
    for table in (
        "domain_events",
        "audit_logs",
        "room_assignments",
        "knockout_rooms",
        "knockout_teams",
        "knockout_tournaments",
        "competition_participants",
        "registrations",
        "competitions",
        "ledger_entries",
        "accounts",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_name in (
        "roomstatus",
        "bracketphase",
        "competitionstatus",
        "competitionmode",
        "ledgerstatus",
        "balancepool",
        "ledgerkind",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
