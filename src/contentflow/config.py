"""Configuration management for contentflow."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CONTENTFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"

    # Storage
    database_path: Path = Path("./data/contentflow.sqlite")

    # Workers
    poll_interval_seconds: float = 0.5
    stall_timeout_seconds: float = 300.0
    max_stalled_count: int = 2

    # Rate limits: platform -> (max admissions, window seconds)
    platform_rate_limits: dict[str, tuple[int, int]] = Field(
        default_factory=lambda: {"linkedin": (10, 60), "x": (50, 900)}
    )
    global_publish_limit: int = 100
    global_publish_window_seconds: int = 60

    # Scheduler
    scheduler_max_concurrent: int = 3
    scheduler_retry_delay_seconds: float = 1.0
    scheduler_interval_minutes: float = 5.0
    scheduler_claim_timeout_seconds: float = 600.0

    # Publishing
    publisher_base_url: str = "http://localhost:3000"
    publisher_timeout_seconds: float = 30.0
    platform_tokens: dict[str, str] = Field(default_factory=dict)

    def ensure_directories(self) -> None:
        """Create the database directory if it doesn't exist."""
        if str(self.database_path) != ":memory:":
            self.database_path.parent.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()
