"""Settings for the redirect service, read from the environment and ``.env``.

Usage::

    from redirector.config import get_settings

    settings = get_settings()
    settings.RESOLVE_TIMEOUT_SECONDS

Key Behaviours
===============
- ``get_settings()`` builds Settings once per process (lru_cache); tests set
  environment variables before the first call.
- Names are case-sensitive and match the environment variable names.
- An empty REDIS_URL disables the redirect cache and the dead-letter stream.
- An empty KAFKA_BOOTSTRAP_SERVERS disables click event publishing.
- DATABASE_URL accepts ``postgresql+asyncpg://`` and ``sqlite+aiosqlite://``.
"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "redirector"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"
    LOG_LEVEL: str = "INFO"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://redirector:redirector@db:5432/redirector"

    # Redis (redirect cache + dead-letter stream)
    REDIS_URL: str = "redis://redis:6379/0"
    LINK_CACHE_TTL_SECONDS: int = 300

    # Short code generation
    SHORT_CODE_LENGTH: int = 7
    CODE_GENERATION_ATTEMPTS: int = 5

    # Resolver
    RESOLVE_TIMEOUT_SECONDS: float = 0.5

    # Click recorder
    RECORDER_QUEUE_SIZE: int = 10000
    RECORDER_WORKERS: int = 4
    RECORDER_MAX_ATTEMPTS: int = 3
    RECORDER_RETRY_DELAY_SECONDS: float = 0.05
    RECORDER_SHUTDOWN_GRACE_SECONDS: float = 5.0
    RECORDER_DEAD_LETTER_STREAM: str = "click_dead_letter"

    # Kafka click event topic
    KAFKA_BOOTSTRAP_SERVERS: str = ""
    KAFKA_CLICK_TOPIC: str = "click_events"

    # Analytics
    ROLLUP_INTERVAL_SECONDS: int = 300
    ROLLUP_REBUILD_DAYS: int = 2
    ROLLUP_SETTLE_SECONDS: int = 900
    ANALYTICS_MAX_RANGE_DAYS: int = 366
    TOP_N_DEFAULT: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
