"""
Engine configuration management using Pydantic settings.
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "Tenant Analytics Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "local"  # local, staging, production

    # Warehouse database
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/analytics_db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 30
    DB_COMMAND_TIMEOUT: int = 300  # seconds, upper bound for any single statement

    # Operational (source) database; falls back to the warehouse database
    SOURCE_DATABASE_URL: Optional[str] = None

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_CACHE_TTL: int = 3600

    # Query executor
    QUERY_TIMEOUT_SECONDS: float = 30.0
    QUERY_CACHE_TTL: int = 300
    QUERY_LOG_SIZE: int = 10000

    # ETL
    ETL_BATCH_SIZE: int = 1000
    ETL_HISTORY_SIZE: int = 50
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Warehouse maintenance
    LARGE_TABLE_THRESHOLD_BYTES: int = 100_000_000
    PARTITION_MONTHS_AHEAD: int = 12

    # Scheduling
    WORKER_CONCURRENCY: int = 4
    SCHEDULER_TICK_SECONDS: float = 30.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    # Monitoring
    ENABLE_METRICS: bool = True
    METRICS_PORT: int = 9100

    @field_validator("ETL_BATCH_SIZE", "WORKER_CONCURRENCY", "QUERY_LOG_SIZE", "ETL_HISTORY_SIZE")
    @classmethod
    def must_be_positive(cls, v):
        """Batch sizes, pool sizes and buffer sizes must be at least 1."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @property
    def source_database_url(self) -> str:
        return self.SOURCE_DATABASE_URL or self.DATABASE_URL


settings = Settings()
