"""Application configuration using pydantic-settings."""

from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore", # Allow extra env vars without failing
    )

    # App
    app_name: str = "CloudOps Actions"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    # Tokens are issued by the dashboard's auth service; we only verify them
    secret_key: str = "change-me"
    algorithm: str = "HS256"

    # API
    api_prefix: str = "/api/v1"
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Database
    database_url: str = "sqlite+aiosqlite:///./cloud_actions.db"
    db_ssl_mode: str = "disable" # "require" for production
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Mendix Deploy API
    platform_api_base_url: str = "https://deploy.mendix.com/api/1"
    platform_request_timeout_seconds: float = 30.0

    # Dispatch loop
    dispatch_interval_seconds: int = 60
    dispatch_scheduler_enabled: bool = False  # off when an external cron drives /dispatch
    dispatch_batch_size: int = 10
    cycle_budget_seconds: float = 30.0
    stale_after_seconds: float = 45.0

    # Retry policy
    max_attempts: int = 3
    retry_backoff_seconds: float = 60.0
    retry_backoff_multiplier: float = 2.0
    retry_backoff_max_seconds: float = 3600.0

    # Retention
    action_retention_days: int = 7
    log_retention_days: int = 30

    # Environments the engine must never touch (case-insensitive)
    protected_environments: list[str] = []

    @model_validator(mode="after")
    def _check_cycle_timing(self) -> "Settings":
        # A runner still inside its budget must never look stale to the next cycle
        if self.cycle_budget_seconds >= self.stale_after_seconds:
            raise ValueError(
                f"cycle_budget_seconds ({self.cycle_budget_seconds}) must be shorter than "
                f"stale_after_seconds ({self.stale_after_seconds})"
            )
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
