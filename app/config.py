"""Application configuration."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="null",
    )

    # Application
    app_name: str = Field(default="Pawbook Appointments API", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")

    # JWT (tokens are issued by the identity service, only verified here)
    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")

    # Booking rules
    booking_max_horizon_days: int = Field(default=365, ge=1, alias="BOOKING_MAX_HORIZON_DAYS")
    booking_conflict_mode: Literal["slot", "overlap"] = Field(
        default="slot",
        alias="BOOKING_CONFLICT_MODE",
        description="'slot': same calendar slot conflicts; 'overlap': any booking closer "
        "than BOOKING_SLOT_MINUTES conflicts",
    )
    booking_slot_minutes: int = Field(default=30, ge=1, alias="BOOKING_SLOT_MINUTES")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    scheduler_tick_seconds: int = Field(default=30, ge=1, alias="SCHEDULER_TICK_SECONDS")
    scheduler_batch_size: int = Field(default=50, ge=1, alias="SCHEDULER_BATCH_SIZE")
    scheduler_sweep_batch_size: int = Field(default=200, ge=1, alias="SCHEDULER_SWEEP_BATCH_SIZE")

    # Notification delivery
    notification_max_attempts: int = Field(default=3, ge=1, alias="NOTIFICATION_MAX_ATTEMPTS")
    notification_backoff_base_seconds: int = Field(
        default=60, ge=1, alias="NOTIFICATION_BACKOFF_BASE_SECONDS"
    )
    notification_backoff_max_seconds: int = Field(
        default=3600, ge=1, alias="NOTIFICATION_BACKOFF_MAX_SECONDS"
    )
    notification_timeout_seconds: float = Field(
        default=10.0, gt=0, alias="NOTIFICATION_TIMEOUT_SECONDS"
    )
    notification_lease_grace_seconds: int = Field(
        default=30, ge=0, alias="NOTIFICATION_LEASE_GRACE_SECONDS"
    )
    notification_template_id: str = Field(
        default="appointment_confirmation", alias="NOTIFICATION_TEMPLATE_ID"
    )

    # Mail provider
    mail_api_url: str = Field(default="", alias="MAIL_API_URL")
    mail_api_key: str = Field(default="", alias="MAIL_API_KEY")
    mail_from_address: str = Field(
        default="Pawbook <appointments@pawbook.local>", alias="MAIL_FROM_ADDRESS"
    )

    # CORS
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured database is SQLite (local runs and tests)."""
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance
settings = get_settings()
