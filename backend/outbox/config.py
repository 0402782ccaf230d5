from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field, field_validator
from functools import lru_cache
from pathlib import Path

# Get the project root (repository root, above backend/)
PROJECT_ROOT = Path(__file__).parent.parent.parent


class Settings(BaseSettings):

    # Application
    app_env: str = "development"
    app_debug: bool = False

    # PostgreSQL Configuration
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "outbox_db"
    postgres_user: str = "outbox_user"
    postgres_password: str = ""

    # SQLite (local development and tests)
    use_sqlite: bool = False
    sqlite_url: str = "sqlite+aiosqlite:///./data/outbox.db"

    @computed_field
    @property
    def database_url(self) -> str:
        """Return the appropriate database URL based on configuration."""
        if self.use_sqlite:
            return self.sqlite_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    # Database pooling (PostgreSQL)
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_recycle: int = 1800

    # Trigger security (empty secret rejects every request)
    cron_secret: str = ""
    admin_api_token: str = ""

    # Outbox worker
    outbox_lease_minutes: int = 10
    outbox_max_duration_seconds: float = 50.0  # external execution ceiling is 60s
    outbox_default_max_attempts: int = 3
    outbox_hard_max_attempts: int = 5
    outbox_retry_backoff_seconds: int = 0  # 0 = failed jobs are reclaimable immediately

    @field_validator("outbox_default_max_attempts", "outbox_hard_max_attempts", mode="after")
    @classmethod
    def attempts_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("attempt ceilings must be at least 1")
        return v

    # In-process scheduling (the HTTP trigger works regardless)
    scheduler_enabled: bool = False
    outbox_schedule_minutes: int = 10

    # Email Configuration
    email_enabled: bool = False  # Default to False so app works without email
    email_provider: str = "smtp"  # "smtp", "resend"
    email_from_address: str = "sales@example.com"
    email_from_name: str = "Sales Team"
    frontend_url: str = "http://localhost:3000"

    # SMTP Settings
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True

    # Resend Settings (alternative)
    resend_api_key: str = ""

    # Observability
    prometheus_enabled: bool = True

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# Singleton instance for easy import
settings = get_settings()
