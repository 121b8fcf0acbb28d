"""Configuration settings for the task review service."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "taskreview"
    db_user: str = "taskreview"
    db_password: str = "taskreview"
    db_url: str | None = None  # full async URL, overrides the fields above
    db_echo: bool = False

    # Redis (cross-process task locks)
    redis_url: str = "redis://localhost:16379/0"
    redis_lock_enabled: bool = False
    redis_lock_timeout_seconds: int = 30

    # History
    snapshot_max_attempts: int = 3

    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Synchronous SQLAlchemy database URL (used by Alembic)."""
        if self.db_url:
            return self.db_url.replace("+asyncpg", "").replace("+aiosqlite", "")
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "TASKREVIEW_"
        env_file = ".env"


# Global settings instance
settings = Settings()
