from functools import lru_cache

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Unprefixed DATABASE_URL / PORT are what Heroku-style platforms inject.
    DATABASE_URL: str = Field(
        "sqlite+aiosqlite:///./cardsync.db",
        validation_alias=AliasChoices("CARDSYNC_DATABASE_URL", "DATABASE_URL"),
    )
    HOST: str = "0.0.0.0"
    PORT: int = Field(8000, validation_alias=AliasChoices("CARDSYNC_PORT", "PORT"))
    CORS_ORIGINS: list[str] = ["http://localhost:5173"]
    LOG_LEVEL: str = "INFO"

    # Session lifecycle
    MIN_PARTICIPANTS: int = 2
    GRACE_PERIOD_SECONDS: float = 60.0
    IDLE_TIMEOUT_SECONDS: float = 300.0
    SWEEP_INTERVAL_SECONDS: float = 5.0

    # Sequencing
    REORDER_WINDOW: int = 16
    REORDER_BUFFER_LIMIT: int = 256
    DEDUP_WINDOW_SIZE: int = 10_000

    # Durability
    CHECKPOINT_EVERY_EVENTS: int = 50
    CHECKPOINT_INTERVAL_SECONDS: float = 30.0
    CHECKPOINT_TIMEOUT_SECONDS: float = 5.0
    STORE_RETRY_BASE_SECONDS: float = 0.5
    STORE_RETRY_MAX_SECONDS: float = 30.0
    EVENT_WRITE_ATTEMPTS: int = 3

    # Real-time match authority (backfill requests)
    MATCH_AUTHORITY_URL: str | None = None
    MATCH_AUTHORITY_TIMEOUT_SECONDS: float = 5.0
    BACKFILL_RETRY_SECONDS: float = 10.0

    model_config = {"env_prefix": "CARDSYNC_"}

    @field_validator("DATABASE_URL")
    @classmethod
    def use_async_driver(cls, v: str) -> str:
        """Point bare postgres:// URLs at asyncpg and sqlite ones at aiosqlite."""
        for scheme in ("postgres://", "postgresql://"):
            if v.startswith(scheme):
                return "postgresql+asyncpg://" + v[len(scheme):]
        if v.startswith("sqlite://"):
            return "sqlite+aiosqlite://" + v[len("sqlite://"):]
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
