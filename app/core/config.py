"""
Application configuration and settings management
"""
import os
from typing import Optional
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "ReArt Events"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "sqlite:///./reart.db"
    ).replace("postgres://", "postgresql://", 1)

    # Admin session (server-issued bearer tokens)
    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me-reart-events-signing-key")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 8
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD_HASH: Optional[str] = None

    # Khalti Payment Gateway
    KHALTI_PUBLIC_KEY: str = os.getenv("KHALTI_PUBLIC_KEY", "")
    KHALTI_SECRET_KEY: str = os.getenv("KHALTI_SECRET_KEY", "")
    KHALTI_ENVIRONMENT: str = os.getenv("KHALTI_ENVIRONMENT", "test")  # test or production
    KHALTI_RETURN_URL: Optional[str] = None

    # Public URLs
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:8000")
    API_BASE_URL: Optional[str] = None
    SUPPORT_EMAIL: str = "support@reartevents.com"
    # Links into the main site, shown after a successful payment when set
    BOOKINGS_URL: Optional[str] = None
    RECEIPT_URL_TEMPLATE: Optional[str] = None  # e.g. https://reartevents.com/bookings/{booking_id}/receipt

    # Outbound HTTP
    HTTP_TIMEOUT: float = 30.0

    # Payment tracking
    PAYMENT_POLL_INTERVAL: float = 3.0
    RETURN_REDIRECT_SECONDS: int = 5

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore"
    }

    @property
    def khalti_return_url(self) -> str:
        """Gateway return URL, defaulting to the callback route on BASE_URL"""
        return self.KHALTI_RETURN_URL or f"{self.BASE_URL.rstrip('/')}/payment/callback"

    @property
    def api_base_url(self) -> str:
        """Base URL of the payment API consumed by the client-side services"""
        return (self.API_BASE_URL or self.BASE_URL).rstrip("/")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with placeholder filtering"""
    s = Settings()
    # Filter out common placeholders from environment
    placeholders = ["XXXX", "your-", "replace-"]

    def is_placeholder(val: Optional[str]) -> bool:
        if not val: return True
        return any(p in val for p in placeholders) or any(p in val.lower() for p in placeholders)

    if is_placeholder(s.KHALTI_SECRET_KEY):
        s.KHALTI_SECRET_KEY = ""
    if is_placeholder(s.KHALTI_PUBLIC_KEY):
        s.KHALTI_PUBLIC_KEY = ""

    return s


# Global settings instance
settings = get_settings()
