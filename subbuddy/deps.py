"""Settings management."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils.env import load_env_file

APP_SUPPORT_DIR = Path.home() / "Library" / "Application Support" / "SubBuddy"


class Settings(BaseSettings):
    """Process settings loaded from environment or .env.

    User-editable preferences (projects, currency, refresh interval) are NOT
    here; they live in the settings store (see services/settings_store.py).
    """

    REVENUECAT_BASE_URL: str = "https://api.revenuecat.com/v2"
    APPSFLYER_BASE_URL: str = "https://hq1.appsflyer.com"
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_MODEL: str = "gpt-4o-mini"

    # Per-call bounds so a single stuck request cannot hang a refresh
    SUBSCRIPTION_TIMEOUT_SECONDS: float = 30.0
    ATTRIBUTION_TIMEOUT_SECONDS: float = 45.0
    TEXT_GEN_TIMEOUT_SECONDS: float = 60.0

    CREDENTIALS_PATH: Path = APP_SUPPORT_DIR / "credentials.json"
    SETTINGS_PATH: Path = APP_SUPPORT_DIR / "settings.json"
    # Must be a URL-safe base64-encoded 32-byte Fernet key
    CREDENTIAL_ENCRYPTION_KEY: Optional[str] = None

    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"
    RELEASE_VERSION: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    load_env_file()
    return Settings()  # type: ignore[call-arg]
