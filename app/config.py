"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


APPLE_ENVIRONMENTS = ("Sandbox", "Production")
NOTIFICATION_ORDERINGS = ("last_write_wins", "monotonic")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to (Render injects this)")

    # Database - Supabase
    SUPABASE_DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Shared secret expected in the X-API-Key header from the mobile client
    API_KEY: str = Field(default="")

    # App Store Server API credentials
    APPLE_ISSUER_ID: str = Field(default="")
    APPLE_KEY_ID: str = Field(default="")
    APPLE_BUNDLE_ID: str = Field(default="")
    APPLE_APP_APPLE_ID: Optional[int] = Field(
        default=None,
        description="Numeric app id, required by the verifier in Production",
    )
    APPLE_ENVIRONMENT: str = Field(default="Sandbox")
    APPLE_PRIVATE_KEY: str = Field(default="")

    # Signed data verification
    APPLE_ROOT_CERTIFICATE_PATHS: str = Field(
        default="./certificates/AppleRootCA-G3.cer",
    )
    APPLE_ENABLE_ONLINE_CHECKS: bool = Field(default=True)
    APPLE_SIGNED_DATE_SKEW_SECONDS: int = Field(default=300)

    # Entitlements
    SUBSCRIPTION_PRODUCT_IDS: str = Field(
        default=(
            "com.comms.comms.premium_weekly,"
            "com.comms.comms.premium_monthly,"
            "com.comms.comms.premium_yearly"
        ),
    )
    NOTIFICATION_ORDERING: str = Field(
        default="last_write_wins",
        description="last_write_wins applies notifications in delivery order; "
        "monotonic skips notifications signed before the last applied one",
    )

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def subscription_product_ids(self) -> frozenset[str]:
        """Parse SUBSCRIPTION_PRODUCT_IDS into a set."""
        return frozenset(
            pid.strip() for pid in self.SUBSCRIPTION_PRODUCT_IDS.split(",") if pid.strip()
        )

    @property
    def apple_root_certificate_paths(self) -> List[str]:
        """Parse APPLE_ROOT_CERTIFICATE_PATHS into a list."""
        return [
            path.strip()
            for path in self.APPLE_ROOT_CERTIFICATE_PATHS.split(",")
            if path.strip()
        ]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.SUPABASE_DATABASE_URL:
            return self.SUPABASE_DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("APPLE_ENVIRONMENT")
    @classmethod
    def validate_apple_environment(cls, v: str) -> str:
        """Only the two App Store environments are accepted."""
        if v not in APPLE_ENVIRONMENTS:
            raise ValueError('APPLE_ENVIRONMENT must be either "Sandbox" or "Production"')
        return v

    @field_validator("NOTIFICATION_ORDERING")
    @classmethod
    def validate_notification_ordering(cls, v: str) -> str:
        """Ensure the ordering strategy is one we implement."""
        v = v.lower()
        if v not in NOTIFICATION_ORDERINGS:
            raise ValueError(
                "NOTIFICATION_ORDERING must be one of: " + ", ".join(NOTIFICATION_ORDERINGS)
            )
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
