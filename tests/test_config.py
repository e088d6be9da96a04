"""Tests for rules validation, error payloads and actor checks."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from arena_economy.actor import ROLE_ADMIN, ROLE_ORGANIZER, Actor
from arena_economy.config import EconomyRules, Settings
from arena_economy.utils.errors import (
    AuthorizationError,
    ErrorCode,
    InsufficientFundsError,
    ValidationError,
    require_positive,
    require_reason,
)


class TestEconomyRules:
    def test_defaults(self):
        rules = EconomyRules()

        assert (
            rules.prize_pool_percent,
            rules.organizer_commission_percent,
            rules.platform_commission_percent,
        ) == (80, 10, 10)
        assert rules.room_size_for("bgmi") == 25
        assert rules.room_size_for("Free_Fire") == 12
        assert rules.room_size_for("unknown") == rules.default_teams_per_room

    def test_split_must_sum_to_hundred(self):
        with pytest.raises(PydanticValidationError):
            EconomyRules(prize_pool_percent=85)

    def test_room_size_at_least_two(self):
        with pytest.raises(PydanticValidationError):
            EconomyRules(teams_per_room={"SOLO_ARENA": 1})

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
        monkeypatch.setenv("ECONOMY__MIN_WITHDRAWAL", "250")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        settings = Settings()

        assert settings.economy.min_withdrawal == 250
        assert settings.log_level == "DEBUG"


class TestErrors:
    def test_insufficient_funds_payload(self):
        error = InsufficientFundsError(pool="withdrawable", required=500, available=120)

        assert error.to_dict() == {
            "kind": "InsufficientFundsError",
            "code": "INSUFFICIENT_BALANCE",
            "message": "Insufficient withdrawable balance: required 500, available 120",
            "details": {"pool": "withdrawable", "required": 500, "available": 120},
        }

    def test_require_reason_strips(self):
        assert require_reason("  refund  ") == "refund"

    @pytest.mark.parametrize("amount", [0, -5, True, 2.5])
    def test_require_positive_rejects(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            require_positive(amount)
        assert exc_info.value.code == ErrorCode.INVALID_AMOUNT.value


class TestActor:
    def test_admin_counts_as_organizer(self):
        assert Actor(account_id="a", roles={ROLE_ADMIN}).is_organizer

    def test_owner_check(self):
        owner = Actor(account_id="org-1", roles={ROLE_ORGANIZER})
        other = Actor(account_id="org-2", roles={ROLE_ORGANIZER})

        owner.require_owner("org-1", "comp-1")
        with pytest.raises(AuthorizationError) as exc_info:
            other.require_owner("org-1", "comp-1")
        assert exc_info.value.code == ErrorCode.NOT_OWNER.value

    def test_system_actor_is_admin(self):
        system = Actor.system()

        assert system.account_id is None
        assert system.is_admin
