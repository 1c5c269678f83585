"""
Clearance configuration management using pydantic-settings.

Security-hardened configuration with validation.
"""

import secrets
import warnings
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_POLICY_PATH = Path(__file__).parent / "policy" / "default_policy.yaml"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )

    # Application Settings
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Security - Secret Key (REQUIRED in production)
    secret_key: str = Field(
        default="",
        description="Secret key for JWT signing (min 32 chars)",
    )

    # JWT Settings
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(
        default=30, description="Access token expiration in minutes"
    )

    # Security - CORS
    cors_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins",
    )
    cors_allow_credentials: bool = Field(
        default=True, description="Allow credentials in CORS"
    )

    # Security - Rate Limiting
    rate_limit_requests: int = Field(
        default=100, description="Rate limit requests per window"
    )
    rate_limit_window_seconds: int = Field(
        default=60, description="Rate limit window in seconds"
    )

    # Approval policy (authority levels + action rules)
    policy_path: Path = Field(
        default=DEFAULT_POLICY_PATH,
        description="Path to the versioned approval policy YAML file",
    )

    # SLA
    sla_at_risk_pct: float = Field(
        default=75.0, description="SLA progress percentage considered at risk"
    )
    sla_critical_pct: float = Field(
        default=90.0, description="SLA progress percentage considered critical"
    )
    sla_hours_urgent: float = Field(default=1.0, description="SLA window for urgent priority")
    sla_hours_high: float = Field(default=4.0, description="SLA window for high priority")
    sla_hours_medium: float = Field(default=8.0, description="SLA window for medium priority")
    sla_hours_low: float = Field(default=24.0, description="SLA window for low priority")
    sla_high_value_amount: float = Field(
        default=10000.0,
        description="Amount at or above which the SLA window is capped at the high priority window",
    )
    sla_sweep_interval_seconds: float = Field(
        default=60.0, description="Interval of the background escalation trigger sweep (0 disables)"
    )

    # Bulk actions
    bulk_max_concurrency: int = Field(
        default=5, description="Maximum workflows processed concurrently in a bulk action"
    )
    bulk_item_timeout_seconds: float = Field(
        default=10.0, description="Per-item timeout for bulk actions"
    )
    bulk_max_items: int = Field(
        default=100, description="Maximum number of workflows in a single bulk request"
    )

    # Realtime
    event_queue_size: int = Field(
        default=256, description="Per-subscriber event queue size"
    )
    heartbeat_interval_seconds: float = Field(
        default=30.0, description="Interval between heartbeat pings"
    )
    heartbeat_timeout_seconds: float = Field(
        default=10.0, description="Time to wait for a pong before reconnecting"
    )
    reconnect_base_delay_seconds: float = Field(
        default=5.0, description="Initial reconnect delay"
    )
    reconnect_max_delay_seconds: float = Field(
        default=60.0, description="Maximum reconnect delay"
    )
    max_reconnect_attempts: int = Field(
        default=5, description="Reconnect attempts before going offline"
    )

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate and potentially generate a secret key."""
        insecure_defaults = [
            "",
            "change-this-to-a-secure-random-string",
            "secret",
            "changeme",
        ]
        if v in insecure_defaults:
            generated = secrets.token_urlsafe(32)
            warnings.warn(
                "SECRET_KEY not set or insecure. Generated temporary key for development. "
                "Set SECRET_KEY environment variable in production!",
                UserWarning,
                stacklevel=2,
            )
            return generated
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize the logging level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        """Ensure SLA thresholds and realtime settings are coherent."""
        if not 0 < self.sla_at_risk_pct < self.sla_critical_pct <= 100:
            raise ValueError(
                "SLA thresholds must satisfy 0 < SLA_AT_RISK_PCT < SLA_CRITICAL_PCT <= 100"
            )
        if self.reconnect_base_delay_seconds > self.reconnect_max_delay_seconds:
            raise ValueError("RECONNECT_BASE_DELAY_SECONDS exceeds RECONNECT_MAX_DELAY_SECONDS")
        if self.bulk_max_concurrency < 1:
            raise ValueError("BULK_MAX_CONCURRENCY must be at least 1")
        if self.environment == "production" and self.debug:
            raise ValueError("DEBUG must be False in production")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    def sla_hours_for(self, priority: str) -> float:
        """SLA window in hours for a priority name."""
        return {
            "urgent": self.sla_hours_urgent,
            "high": self.sla_hours_high,
            "medium": self.sla_hours_medium,
            "low": self.sla_hours_low,
        }.get(priority, self.sla_hours_medium)


# Global settings instance
settings = Settings()
