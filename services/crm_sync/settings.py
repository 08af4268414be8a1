"""
Configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files
with validation and type conversion.
"""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CrmSyncSettings(BaseSettings):
    """
    Settings for the CRM sync service.

    Settings are loaded in this order of precedence:
    1. Environment variables
    2. .env file in current directory
    3. Default values

    The API base URL and key are optional at load time. Their absence is
    reported as a ConfigurationError on the first remote call.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Configuration
    api_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the CRM REST API, including the version path"
    )

    api_key: Optional[str] = Field(
        default=None,
        description="API key, sent as the HTTP Basic username with an empty password"
    )

    request_timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Fixed per-request deadline in seconds"
    )

    api_max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Maximum number of in-process retries for retryable failures"
    )

    retry_base_delay: float = Field(
        default=0.5,
        ge=0,
        description="Base delay for exponential backoff between retries (seconds)"
    )

    # Rate Limiting
    rate_limit_window_seconds: int = Field(
        default=300,
        ge=1,
        description="Rolling window used by the rate budget"
    )

    rate_limit_max_requests: int = Field(
        default=300,
        ge=1,
        description="Maximum requests allowed within the rolling window"
    )

    rate_limit_max_wait_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Hard ceiling on how long a call may block waiting for budget"
    )

    min_delay_between_requests_ms: int = Field(
        default=1100,
        ge=0,
        description="Minimum spacing between consecutive requests (milliseconds)"
    )

    # Caching
    cache_default_ttl_seconds: int = Field(
        default=3600,
        ge=0,
        description="TTL for cached general lookups"
    )

    taxonomy_cache_ttl_seconds: int = Field(
        default=86400,
        ge=0,
        description="TTL for cached taxonomy lookups (funds, campaigns, types)"
    )

    # Matching
    matcher_max_candidates: int = Field(
        default=10,
        ge=1,
        description="Maximum search results verified per email or name search"
    )

    matcher_strict_name_match: bool = Field(
        default=False,
        description="Raise AmbiguousMatchError instead of accepting the first "
                    "unverified name match when several results come back"
    )

    # Payment Attribution
    general_fund_id: Optional[int] = Field(
        default=None,
        description="Fund used when no category-specific fund applies"
    )

    general_fund_name: str = Field(
        default="General Fund",
        description="Fund name looked up when general_fund_id is not configured"
    )

    membership_fund_id: Optional[int] = Field(default=None)
    language_class_fund_id: Optional[int] = Field(default=None)
    events_fund_id: Optional[int] = Field(default=None)

    family_slot_fund_id: Optional[int] = Field(
        default=None,
        description="Fund id carried by family-slot products as their sync marker"
    )

    membership_campaign_id: Optional[int] = Field(default=None)
    language_class_campaign_id: Optional[int] = Field(default=None)
    events_campaign_id: Optional[int] = Field(default=None)
    general_campaign_id: Optional[int] = Field(default=None)

    gift_type_name: str = Field(
        default="Other Income",
        description="Preferred gift type name for online purchases"
    )

    # Memberships
    membership_level_ids: Dict[str, int] = Field(
        default_factory=dict,
        description="Local membership-type label -> remote membership level id"
    )

    membership_group_ids: Dict[str, int] = Field(
        default_factory=dict,
        description="Remote membership level name -> group the member is added to"
    )

    # Attribute store
    db_dsn: Optional[str] = Field(
        default=None,
        description="Database connection string for the local attribute store"
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
        default="crm-sync",
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
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format is supported."""
        valid_formats = {"json", "text"}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(valid_formats)}")
        return v.lower()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment name."""
        valid_envs = {"development", "staging", "production"}
        if v.lower() not in valid_envs:
            raise ValueError(f"environment must be one of: {', '.join(valid_envs)}")
        return v.lower()

    @field_validator("api_key", "api_base_url")
    @classmethod
    def blank_to_none(cls, v):
        """Treat blank credentials and URLs as not configured."""
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("db_dsn")
    @classmethod
    def validate_db_dsn(cls, v):
        """Validate database DSN format if provided."""
        if v is None:
            return v

        v = v.strip()
        if not v:
            return None

        if not v.startswith(("postgresql://", "postgres://", "postgresql+psycopg://")):
            raise ValueError("db_dsn must be a valid PostgreSQL connection string")

        return v

    @property
    def min_delay_seconds(self) -> float:
        return self.min_delay_between_requests_ms / 1000.0

    def is_configured(self) -> bool:
        """Check whether both the API base URL and key are present."""
        return bool(self.api_base_url and self.api_key)

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache()
def get_settings() -> CrmSyncSettings:
    """
    Get cached settings instance.

    One instance per process; construct CrmSyncSettings directly to get
    an independent copy (tests do this).
    """
    return CrmSyncSettings()


# Convenience alias
settings = get_settings
