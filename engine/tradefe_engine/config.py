"""
Configuration management for the Trade FE engine.

Uses pydantic-settings for type-safe environment variable handling.
All variables use the TRADEFE_ prefix (e.g. TRADEFE_BACKEND_BASE_URL).
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppEnvironment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="TRADEFE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: AppEnvironment = Field(
        default=AppEnvironment.DEVELOPMENT,
        description="Application environment",
    )

    # Server configuration
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8766, ge=1024, le=65535, description="Server port")
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Origins allowed to call the API (dashboard dev server)",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    # Backend trading API
    backend_base_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the backend trading API",
    )
    backend_request_timeout_s: float = Field(
        default=10.0,
        description="Timeout for request/response calls to the backend",
        gt=0,
        le=120,
    )
    backend_max_retries: int = Field(
        default=2,
        description="Retry attempts for transient backend failures",
        ge=0,
        le=10,
    )
    backend_retry_backoff_s: float = Field(
        default=0.5,
        description="Base backoff in seconds (doubled per attempt)",
        ge=0,
        le=30,
    )
    stream_connect_timeout_s: float = Field(
        default=10.0,
        description="Connect timeout for the push feed (reads never time out)",
        gt=0,
        le=120,
    )

    # Market data controller
    status_recheck_interval_s: float = Field(
        default=60.0,
        description="Seconds between market status re-checks while not streaming",
        gt=0,
        le=3600,
    )
    tick_history_limit: int = Field(
        default=50,
        description="Maximum ticks kept in the live history",
        ge=1,
        le=1000,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @field_validator("backend_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Paths are appended with a leading slash."""
        return v.rstrip("/")

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.env == AppEnvironment.DEVELOPMENT

    def get_redacted_config(self) -> dict[str, str | int | float | bool]:
        """
        Get configuration dict safe for logging and API responses.
        """
        return {
            "env": self.env.value,
            "host": self.host,
            "port": self.port,
            "log_level": self.log_level,
            "backend_base_url": self.backend_base_url,
            "status_recheck_interval_s": self.status_recheck_interval_s,
            "tick_history_limit": self.tick_history_limit,
        }


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure single instance throughout application.
    """
    return Settings()


def get_settings_dep() -> Settings:
    """
    Dependency for FastAPI routes to get settings.
    Allows for easy dependency override in tests.
    """
    return get_settings()
