from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    Per-tenant provider credentials are NOT configured here; they live on the
    Tenant record and are handed to the provider client at call time.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required
    DATABASE_URL: str

    # Logging Configuration - required
    LOG_LEVEL: str

    # Messaging provider API
    PROVIDER_API_BASE: str = "https://graph.facebook.com/v18.0"
    PROVIDER_TIMEOUT_SECONDS: float = 5.0
    PROVIDER_TEMPLATE_LANGUAGE: str = "en_US"

    # Webhook Security
    # When False, tenants without a shared secret are accepted unverified.
    REQUIRE_WEBHOOK_SIGNATURES: bool = False

    # External workflow hook (optional, best-effort)
    WORKFLOW_WEBHOOK_BASE: Optional[str] = None
    WORKFLOW_API_KEY: Optional[str] = None
    WORKFLOW_TIMEOUT_SECONDS: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
