"""Application configuration."""
from functools import lru_cache

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EconomyRules(BaseModel):
    """Tunable economy constants supplied by the configuration store.

    Rules are validated as a whole before they are accepted; a rule set whose
    percentages do not add up to 100 never reaches the engine.
    """

    # Entry fee split (percent of every collected fee)
    prize_pool_percent: int = Field(
        default=80,
        description="Share of entry fees escrowed into the prize pool",
    )
    organizer_commission_percent: int = Field(
        default=10,
        description="Share of entry fees paid to the organizer on winner declaration",
    )
    platform_commission_percent: int = Field(
        default=10,
        description="Share of entry fees retained by the platform",
    )

    # Business-rule timers (minutes)
    join_cutoff_minutes: int = Field(
        default=2,
        description="Joining closes this many minutes before start",
    )
    exit_cutoff_minutes: int = Field(
        default=30,
        description="Solo exit (with refund) closes this many minutes before start",
    )
    dispute_window_minutes: int = Field(
        default=30,
        description="Minimum delay after a competition ends before winners may be declared",
    )
    auto_cancel_after_minutes: int = Field(
        default=60,
        description="Completed competitions without winners are cancelled and refunded after this",
    )

    # Withdrawals
    min_withdrawal: int = Field(
        default=100,
        description="Minimum withdrawal amount",
    )

    # Knockout brackets
    room_schedule_gap_minutes: int = Field(
        default=15,
        description="Gap between scheduled rooms of the same round",
    )
    teams_per_room: dict[str, int] = Field(
        default_factory=lambda: {"BGMI": 25, "FREE_FIRE": 12},
        description="Room capacity (teams) per game variant",
    )
    default_teams_per_room: int = 12

    @field_validator(
        "prize_pool_percent",
        "organizer_commission_percent",
        "platform_commission_percent",
    )
    @classmethod
    def validate_percent(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("percentages must be between 0 and 100")
        return v

    @field_validator(
        "join_cutoff_minutes",
        "exit_cutoff_minutes",
        "dispute_window_minutes",
        "auto_cancel_after_minutes",
        "room_schedule_gap_minutes",
    )
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v < 0:
            raise ValueError("time windows must not be negative")
        return v

    @field_validator("min_withdrawal")
    @classmethod
    def validate_min_withdrawal(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("min_withdrawal must be positive")
        return v

    @field_validator("default_teams_per_room")
    @classmethod
    def validate_default_room_size(cls, v: int) -> int:
        if v < 2:
            raise ValueError("a room needs room for at least 2 teams")
        return v

    @field_validator("teams_per_room")
    @classmethod
    def validate_room_sizes(cls, v: dict[str, int]) -> dict[str, int]:
        for game, size in v.items():
            if size < 2:
                raise ValueError(f"teams_per_room[{game}] must be at least 2")
        # Game keys are matched case-insensitively
        return {game.upper(): size for game, size in v.items()}

    @model_validator(mode="after")
    def validate_fee_split(self) -> "EconomyRules":
        """organizer% + platform% + prizePool% must equal 100."""
        total = (
            self.prize_pool_percent
            + self.organizer_commission_percent
            + self.platform_commission_percent
        )
        if total != 100:
            raise ValueError(
                f"fee split must sum to 100, got {total} "
                f"(prize={self.prize_pool_percent}, "
                f"organizer={self.organizer_commission_percent}, "
                f"platform={self.platform_commission_percent})"
            )
        return self

    def room_size_for(self, game: str) -> int:
        """Teams per room for a game variant."""
        return self.teams_per_room.get(game.upper(), self.default_teams_per_room)


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_env: str = "development"
    log_level: str = "INFO"
    json_logs: bool = False

    # Database - required
    database_url: str = Field(
        ...,
        description="Database connection URL (required)",
    )
    db_pool_size: int = Field(
        default=20,
        description="DB connection pool size",
    )
    db_max_overflow: int = Field(
        default=10,
        description="Max overflow connections",
    )
    db_echo: bool = False

    # Redis (domain event relay, optional)
    redis_url: str | None = Field(
        default=None,
        description="Redis connection URL for the domain event stream",
    )
    event_stream_key: str = "economy:events"
    event_stream_max_len: int = 100000

    # Economy rules
    economy: EconomyRules = Field(default_factory=EconomyRules)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production environment."""
        if self.app_env == "production":
            if self.database_url.startswith("sqlite"):
                raise ValueError(
                    "SQLite cannot provide row-level locking; "
                    "use PostgreSQL in production"
                )
            if self.log_level == "DEBUG":
                import warnings
                warnings.warn(
                    "DEBUG log level in production may expose sensitive information"
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
