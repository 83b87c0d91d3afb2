"""Configuration settings for viking_sync."""

import logging
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DB_FILENAME = "app_store.db"
KEYED_STORE_FILENAME = "app_store.json"


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> "str | None":
    """Validate the upstream URL before bearer tokens are sent to it.

    Rejects non-http/https schemes, URLs with no host, and remote HTTP
    endpoints (only localhost/127.0.0.1 are allowed over plaintext HTTP).

    Returns:
        The URL without a trailing slash if valid, or ``None`` if rejected.
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid API URL scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid API URL; missing host.")
        return None
    if parsed.scheme == "http":
        host = parsed.hostname or ""
        if not allow_localhost_http or host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http API URL for security.")
            return None
    return url.rstrip("/")


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Upstream
    api_url: str
    oauth_client_id: str | None = None  # Required unless demo mode
    oauth_authorize_url: str = "https://www.onlinescoutmanager.co.uk/oauth/authorize"
    oauth_scope: str = (
        "section:member:read section:programme:read section:event:read section:flexirecord:write"
    )
    frontend_url: str = "http://localhost:3000"

    # App
    app_version: str = "0.0.0"
    sentry_dsn: str | None = None
    demo_mode: bool = False
    log_level: str = "WARNING"

    # Local store
    data_dir: Path = Path.home() / ".viking_sync"
    store_backend: str = "auto"  # auto | sqlite | keyed

    # API governor
    request_spacing_ms: int = 100
    max_concurrent_requests: int = 1
    attendance_batch_size: int = 5
    attendance_batch_pause_ms: int = 500
    request_timeout: float = 30.0
    probe_timeout: float = 5.0
    queue_timeout: float = 300.0

    # Sync
    preload_flexi: bool = True
    fetch_shared_attendance: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    @field_validator("api_url")
    @classmethod
    def _check_api_url(cls, value: str) -> str:
        checked = validate_backend_url(value)
        if checked is None:
            raise ValueError("API_URL must be https, or http on localhost")
        return checked

    @field_validator("store_backend")
    @classmethod
    def _check_store_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in {"auto", "sqlite", "keyed"}:
            raise ValueError("STORE_BACKEND must be one of auto, sqlite, keyed")
        return value

    @model_validator(mode="after")
    def _require_client_id(self) -> "Settings":
        if not self.demo_mode and not self.oauth_client_id:
            raise ValueError("OAUTH_CLIENT_ID is required unless DEMO_MODE is enabled")
        return self

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    @property
    def keyed_store_path(self) -> Path:
        return self.data_dir / KEYED_STORE_FILENAME


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
