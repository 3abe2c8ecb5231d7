"""
Service Configuration Management

Centralizes all configuration for the referral handoff service.
Supports multiple environments (local, dev, prod) with proper secret management.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    LOCAL = "local"
    DEV = "dev"
    PROD = "prod"


class HandoffConfig(BaseSettings):
    """
    Service-wide configuration settings.

    Loads from environment variables with .env file support.
    All secrets should be injected via environment in production.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Environment = Field(default=Environment.LOCAL)

    # Referral Database
    mongo_db_url: str = Field(default="mongodb://localhost:27017")
    mongo_db_name: str = Field(default="referral_handoff")
    use_in_memory_store: bool = Field(
        default=False, description="Keep referrals in process memory (local development only)"
    )

    # Security
    jwt_secret_key: str = Field(default="change-me-in-production")
    jwt_algorithm: str = Field(default="HS256")

    # Referral Lifecycle
    default_referral_ttl_hours: int = Field(default=72)
    max_referral_ttl_days: int = Field(default=90)

    # Expiry Sweeper
    enable_expiry_sweeper: bool = Field(default=True)
    expiry_sweep_interval_seconds: int = Field(default=300)
    expiry_sweep_batch_size: int = Field(default=200)

    # Triage
    triage_queue_limit: int = Field(default=100, ge=1, le=1000)

    # Appointment Scheduler
    appointment_scheduler_url: str = Field(default="http://localhost:8100")
    appointment_scheduler_timeout_seconds: float = Field(default=10.0)
    appointment_scheduler_max_retries: int = Field(default=2, ge=0, le=5)

    # Audit & Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)
    enable_audit_logging: bool = Field(default=True)

    # CORS Configuration
    allowed_origins: str = Field(default="http://localhost:3000,http://localhost:3001")

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_secret_key(cls, v: str, info) -> str:
        """Ensure secret key is properly set in non-local environments."""
        env = info.data.get("environment", Environment.LOCAL)
        if env != Environment.LOCAL and v == "change-me-in-production":
            raise ValueError("jwt_secret_key must be set in non-local environments")
        return v

    @field_validator(
        "default_referral_ttl_hours",
        "max_referral_ttl_days",
        "expiry_sweep_interval_seconds",
        "expiry_sweep_batch_size",
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        """Intervals, sizes and lifetimes must be strictly positive."""
        if v <= 0:
            raise ValueError(f"{info.field_name} must be greater than zero")
        return v

    @field_validator("appointment_scheduler_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("appointment_scheduler_timeout_seconds must be greater than zero")
        return v

    @field_validator("max_referral_ttl_days")
    @classmethod
    def validate_ttl_bounds(cls, v: int, info) -> int:
        """The default TTL has to fit inside the maximum TTL."""
        default_hours = info.data.get("default_referral_ttl_hours")
        if default_hours is not None and default_hours > v * 24:
            raise ValueError("default_referral_ttl_hours exceeds max_referral_ttl_days")
        return v

    def get_allowed_origins_list(self) -> list[str]:
        """Parse CORS allowed origins into a list."""
        if self.environment == Environment.LOCAL:
            return ["*"]  # Allow all in local development
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PROD

    @property
    def is_local(self) -> bool:
        """Check if running in local development environment."""
        return self.environment == Environment.LOCAL


@lru_cache()
def get_config() -> HandoffConfig:
    """
    Get cached service configuration.

    Uses lru_cache to ensure config is loaded only once.
    """
    return HandoffConfig()
