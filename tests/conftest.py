"""Shared fixtures: in-memory database, rules, clock, actors and factories."""

from __future__ import annotations

import random
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from arena_economy.actor import ROLE_ADMIN, ROLE_ORGANIZER, Actor
from arena_economy.config import EconomyRules, Settings
from arena_economy.models.account import Account
from arena_economy.models.competition import Competition, CompetitionMode
from arena_economy.models.ledger import BalancePool, LedgerKind
from arena_economy.procedures import EconomyProcedures
from arena_economy.services.entry import EntryService
from arena_economy.services.ledger import LedgerService
from arena_economy.utils.db import close_db, create_engine, create_session_factory, init_db


# =============================================================================
# Test Configuration
# =============================================================================

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
FIXED_NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock injected into procedures."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def get_test_settings() -> Settings:
    return Settings(app_env="test", database_url=TEST_DATABASE_URL)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory schema per test."""
    engine = create_engine(get_test_settings())
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def rules() -> EconomyRules:
    return EconomyRules()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def procedures(session_factory, rules, clock) -> EconomyProcedures:
    return EconomyProcedures(session_factory, rules, clock=clock, rng=random.Random(7))


@pytest.fixture
def admin() -> Actor:
    return Actor(account_id="admin-1", roles=frozenset({ROLE_ADMIN}))


# =============================================================================
# Factories
# =============================================================================


async def make_account(
    session: AsyncSession,
    nickname: str,
    *,
    spendable: int = 0,
    withdrawable: int = 0,
    account_id: str | None = None,
) -> Account:
    """Create an account funded through the ledger (replay stays consistent)."""
    account = Account(nickname=nickname)
    if account_id is not None:
        account.id = account_id
    session.add(account)
    await session.flush()

    ledger = LedgerService(session)
    if spendable:
        await ledger.post(account, LedgerKind.DEPOSIT, BalancePool.SPENDABLE, spendable)
    if withdrawable:
        await ledger.post(account, LedgerKind.PRIZE, BalancePool.WITHDRAWABLE, withdrawable)
    return account


def organizer_actor(account: Account) -> Actor:
    return Actor(account_id=account.id, roles=frozenset({ROLE_ORGANIZER}))


def player_actor(account: Account) -> Actor:
    return Actor(account_id=account.id)


async def make_competition(
    session: AsyncSession,
    rules: EconomyRules,
    organizer: Account,
    *,
    mode: CompetitionMode = CompetitionMode.SOLO,
    capacity: int = 2,
    entry_fee: int = 50,
    prize_distribution: dict | None = None,
    start_in: timedelta = timedelta(hours=2),
    now: datetime = FIXED_NOW,
) -> Competition:
    return await EntryService(session, rules).create_competition(
        organizer_actor(organizer),
        title="Sunday Scrim",
        mode=mode,
        capacity=capacity,
        entry_fee=entry_fee,
        start_time=now + start_in,
        prize_distribution=prize_distribution or {1: 40},
        now=now,
    )
