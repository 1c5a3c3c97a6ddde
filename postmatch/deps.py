"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Generator, Optional

from fastapi import Request
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session, sessionmaker


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: str = "sqlite:///./postmatch.db"

    # Shopify Admin API
    SHOPIFY_API_VERSION: str = "2024-07"
    # Shared secret for webhook HMAC verification; unset disables the check
    SHOPIFY_API_SECRET: Optional[str] = None
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Order import
    ORDER_BATCH_SIZE: int = 1000
    ORDER_BATCH_CONCURRENCY: int = 4
    TRANSACTION_TIMEOUT_SECONDS: float = 10.0
    BULK_EXPORT_LOOKBACK_DAYS: int = 365

    # Attribution
    CAMPAIGN_WINDOW_DAYS: int = 60

    # Telemetry
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_session_factory(request: Request) -> sessionmaker:
    """Return the session factory built at startup (see main.create_app)."""
    return request.app.state.session_factory


def get_db(request: Request) -> Generator[Session, None, None]:
    """Yield a session bound to the app's engine and close it afterwards."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_import_service(request: Request):
    """Return the BulkImportService built at startup (see main.create_app)."""
    return request.app.state.import_service
