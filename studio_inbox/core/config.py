"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field(
        "sqlite:///./studio_inbox.db",
        description="SQLAlchemy database URL (PostgreSQL in production)"
    )
    database_pool_size: int = Field(5, description="Database connection pool size")
    database_max_overflow: int = Field(10, description="Max overflow connections")

    # ============================================================
    # API Configuration
    # ============================================================
    api_key: Optional[str] = Field(None, description="API key for the X-API-Key header")
    allowed_origins: str = Field(
        "http://localhost:3000,http://localhost:8000",
        description="Comma-separated CORS allowed origins"
    )
    api_port: int = Field(8000, description="API server port")

    # ============================================================
    # Sync Engine
    # ============================================================
    sync_default_frequency_minutes: int = Field(15, description="Cadence for accounts without their own setting")
    sync_folder_timeout_seconds: float = Field(60.0, description="Timeout for a single folder fetch")
    sync_account_deadline_seconds: float = Field(300.0, description="Overall deadline for one account sync pass")
    sync_folder_concurrency: int = Field(3, description="Folders fetched in parallel per account")
    sync_max_backoff_minutes: int = Field(240, description="Upper bound for error backoff between passes")
    sync_fetch_limit: int = Field(500, description="Max messages fetched per folder per pass")

    # ============================================================
    # Threading / Rules
    # ============================================================
    thread_heuristic_window_days: int = Field(
        14,
        description="Window for subject+participant thread matching"
    )
    rules_stop_on_first_match: bool = Field(
        False,
        description="Stop rule evaluation for a message after the first matching rule"
    )

    # ============================================================
    # Transport
    # ============================================================
    imap_timeout_seconds: int = Field(30, description="IMAP network timeout")
    smtp_timeout_seconds: int = Field(30, description="SMTP network timeout")
    send_max_retries: int = Field(2, description="Retries for outbound sends")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse allowed origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
