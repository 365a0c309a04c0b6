"""Configuration settings for the task orchestration core."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "taskcore"
    db_user: str = "agent"
    db_password: str = "agent"
    db_url: str | None = None  # full SQLAlchemy async URL, wins over the parts above

    # Redis (event fan-out only)
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = False

    # Agent runner
    runner: str = "cli"  # "cli" or "opencode"
    claude_cmd: str = "claude"
    opencode_api_url: str = "http://localhost:4096"
    opencode_directory: str | None = None
    project_path: Path = Path.cwd()

    # Queue defaults
    default_priority: int = 50
    max_retries: int = 2

    # Autonomous executor defaults
    poll_interval_seconds: float = 5.0
    auto_approve_threshold: int = 80
    max_idle_minutes: float = 30.0
    enable_auto_approval: bool = True

    log_level: str = "INFO"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL (application and Alembic)."""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "TASKCORE_"
        env_file = ".env"


# Settings for the CLI entry point; services receive theirs explicitly.
settings = Settings()
