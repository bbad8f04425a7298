"""
Configuration management using Pydantic Settings.

Loads the reporting sync configuration from environment variables and .env
files with validation and type conversion.
"""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReportingSyncSettings(BaseSettings):
    """
    Configuration for the reporting sync service.

    Settings are loaded in this order of precedence:
    1. Environment variables
    2. .env file in current directory
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Source API Configuration
    source_api_url: str = Field(
        default="http://localhost:54321",
        description="Base URL of the source data API (REST list endpoints)"
    )

    source_service_key: str = Field(
        description="Service key used to read every tenant's rows from the source"
    )

    source_timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Source request timeout in seconds"
    )

    # Database Configuration
    database_url: Optional[str] = Field(
        default=None,
        description="Reporting database connection string (PostgreSQL DSN)"
    )

    # Sync Configuration
    sync_batch_size: int = Field(
        default=1000,
        ge=1,
        le=10000,
        description="Source page size (rows per paginated request)"
    )

    write_chunk_size: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Rows per multi-row upsert statement"
    )

    usage_max_records: int = Field(
        default=50000,
        ge=1,
        description="Maximum usage records fetched per run; the rest waits for the next run"
    )

    max_offset: int = Field(
        default=1_000_000,
        ge=1,
        description="Safety ceiling for pagination offsets"
    )

    enable_view_refresh: bool = Field(
        default=True,
        description="Refresh reporting materialised views after each run"
    )

    # State Storage
    state_path: str = Field(
        default="data/reporting_sync/state.json",
        description="JSON file holding watermarks and the last run result"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    log_format: str = Field(
        default="json",
        description="Log output format (json, text)"
    )

    service_name: str = Field(
        default="reporting-sync",
        description="Service name for logging and monitoring"
    )

    environment: str = Field(
        default="development",
        description="Environment name (development, staging, production)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format is supported."""
        valid_formats = {"json", "text"}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(sorted(valid_formats))}")
        return v.lower()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment name."""
        valid_envs = {"development", "staging", "production"}
        if v.lower() not in valid_envs:
            raise ValueError(f"environment must be one of: {', '.join(sorted(valid_envs))}")
        return v.lower()

    @field_validator("source_service_key")
    @classmethod
    def validate_source_service_key(cls, v):
        """Validate the service key is not empty."""
        if not v or not v.strip():
            raise ValueError("source_service_key cannot be empty")
        return v.strip()

    @field_validator("source_api_url")
    @classmethod
    def validate_source_api_url(cls, v):
        """Strip the trailing slash so paths can be appended."""
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("source_api_url must be an http(s) URL")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Validate database DSN format if provided."""
        if v is None:
            return v

        v = v.strip()
        if not v:
            return None

        if not v.startswith(("postgresql://", "postgres://", "postgresql+psycopg://")):
            raise ValueError("database_url must be a valid PostgreSQL connection string")

        return v

    def get_source_headers(self) -> Dict[str, str]:
        """Get the source API headers with service-key authentication."""
        return {
            "apikey": self.source_service_key,
            "Authorization": f"Bearer {self.source_service_key}",
            "User-Agent": f"{self.service_name}/1.0",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }


@lru_cache()
def get_settings() -> ReportingSyncSettings:
    """
    Get cached settings instance.

    Settings are loaded only once per process.

    Returns:
        ReportingSyncSettings instance with loaded configuration
    """
    return ReportingSyncSettings()


# Convenience alias
settings = get_settings
