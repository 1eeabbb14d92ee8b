"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


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

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")

    # Development Settings
    DEV_AUTH_DISABLED: bool = Field(
        default=False,
        description="Disable authentication for local development/testing"
    )

    # Database (Postgres; Supabase in production)
    SUPABASE_DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication (tokens are issued by the account service)
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=1440)  # 24 hours

    # App Store signed payload verification
    APP_STORE_BUNDLE_ID: str = Field(default="")
    APP_STORE_ENVIRONMENT: str = Field(
        default="production",
        description="Entitlement environment this deployment grants (production/sandbox)",
    )
    APP_STORE_ROOT_CERT_SHA256: str = Field(
        default="",
        description="Comma-separated SHA-256 fingerprints of trusted root certificates",
    )

    # Entitlement
    ENTITLEMENT_PRODUCT_IDS: str = Field(
        default="com.cybersimply.adfree.lifetime.2025,com.cybersimply.adfree.monthly.2025"
    )
    ENTITLEMENT_CACHE_TTL_SECONDS: int = Field(default=3600)  # 1 hour

    # Remote store client (device side)
    REMOTE_MAX_ATTEMPTS: int = Field(default=3)
    REMOTE_BACKOFF_SECONDS: float = Field(default=0.5)

    # App Configuration
    API_BASE_URL: str = Field(default="http://localhost:8000")
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def entitlement_product_ids_list(self) -> List[str]:
        """Parse ENTITLEMENT_PRODUCT_IDS into a list."""
        return [pid.strip() for pid in self.ENTITLEMENT_PRODUCT_IDS.split(",") if pid.strip()]

    @property
    def app_store_root_fingerprints(self) -> List[str]:
        """Normalised (lowercase, no colons) pinned root fingerprints."""
        return [
            fp.strip().replace(":", "").lower()
            for fp in self.APP_STORE_ROOT_CERT_SHA256.split(",")
            if fp.strip()
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

    @property
    def auth_disabled(self) -> bool:
        """Check if auth is disabled (only allowed in development)."""
        return self.is_development and self.DEV_AUTH_DISABLED

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v

    @field_validator("APP_STORE_ENVIRONMENT")
    @classmethod
    def validate_app_store_environment(cls, v: str) -> str:
        """Only the two App Store environments are meaningful."""
        value = v.strip().lower()
        if value not in ("production", "sandbox"):
            raise ValueError("APP_STORE_ENVIRONMENT must be 'production' or 'sandbox'")
        return value


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
