"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Public site that scan redirects land on (listing pages live there)
    SITE_URL: str = "http://localhost:3000"
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Correlation token cookie shared by scan and page-view handlers
    SESSION_COOKIE_NAME: str = "homeqr_session"
    SESSION_COOKIE_MAX_AGE: int = 60 * 60 * 24 * 30  # 30 days
    SESSION_COOKIE_SECURE: bool = False

    # Calendar days for the analytics table are cut in this timezone
    ANALYTICS_TIMEZONE: str = "UTC"

    # A token-less page view joins a QR session of the same listing first seen
    # within this many seconds (0 disables the fallback)
    QR_SESSION_FALLBACK_SECONDS: int = 300

    # Admin endpoints (repair job) and the SQLAdmin panel
    ADMIN_SECRET: Optional[str] = None
    ADMIN_SESSION_SECRET: str = "change-this-admin-session-secret"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
