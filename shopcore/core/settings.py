"""Application settings with Pydantic validation."""

from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shopcore.constants import QueryLogging


class AppSettings(BaseSettings):
    """Process-level settings with validation and environment variable support.

    Database connection parameters are not part of this model; they are
    validated by ``validate_pool_config`` so that every missing key can be
    reported at once.
    """

    # Environment
    env: str = Field(
        default="production", description="Environment (production, development, testing, staging)"
    )

    # Logging
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_json: bool = Field(default=False, description="Write JSON log files")
    log_dir: Optional[str] = Field(
        default=None, description="Directory for rotating log files (console only when unset)"
    )

    # Query instrumentation
    slow_query_threshold_ms: int = Field(
        default=QueryLogging.SLOW_QUERY_THRESHOLD_MS,
        ge=0,
        description="Queries slower than this are logged as warnings",
    )
    query_logging: Optional[bool] = Field(
        default=None, description="Log every query at DEBUG level (defaults to on in development)"
    )

    # Shutdown
    shutdown_timeout: int = Field(
        default=30, ge=5, le=300, description="Seconds to wait for leased connections on shutdown"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields in .env
    )

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value."""
        allowed = ["production", "development", "testing", "staging"]
        if v.lower() not in allowed:
            raise ValueError(f'ENV must be one of: {", ".join(allowed)}')
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f'LOG_LEVEL must be one of: {", ".join(allowed)}')
        return v_upper

    @model_validator(mode="after")
    def default_query_logging(self) -> "AppSettings":
        """Turn per-query logging on by default in development."""
        if self.query_logging is None:
            self.query_logging = self.env == "development"
        return self

    def is_development(self) -> bool:
        """
        Check if running in development mode.

        Returns:
            True if development environment
        """
        return self.env == "development"

    def is_production(self) -> bool:
        """
        Check if running in production mode.

        Returns:
            True if production environment
        """
        return self.env == "production"


# Singleton instance
_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    """
    Get application settings singleton.

    Returns:
        AppSettings instance

    Raises:
        ValidationError: If settings are invalid
    """
    global _settings
    if _settings is None:
        _settings = AppSettings()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (useful for testing)."""
    global _settings
    _settings = None
