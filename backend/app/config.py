"""Configuration settings for the Klettrack sync backend."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings

from klettrack.contract import DEFAULT_PULL_LIMIT, MAX_MUTATIONS_PER_PUSH, MAX_PULL_LIMIT


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Record store
    record_store: Literal["sqlite", "supabase"] = "sqlite"
    sqlite_path: str = "klettrack-sync.db"

    # Supabase
    supabase_url: str | None = None
    # New key system (preferred)
    supabase_secret_key: str | None = None
    # Legacy key (deprecated)
    supabase_service_role_key: str | None = None

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_audience: str | None = "authenticated"
    jwt_expire_minutes: int = 60 * 24 * 7  # 1 week

    # Sync protocol
    sync_base_path: str = "/sync"
    max_push_mutations: int = MAX_MUTATIONS_PER_PUSH
    max_pull_limit: int = MAX_PULL_LIMIT
    default_pull_limit: int = DEFAULT_PULL_LIMIT

    # Rate limiting
    rate_limit_enabled: bool = True
    sync_rate_limit: str = "120/minute"
    # Reverse proxies whose X-Forwarded-For header is believed
    trusted_proxy_cidrs: list[str] = []

    # App
    debug: bool = False
    log_level: str = "INFO"
    # Origins allowed to call the API from a browser. Requests without an
    # Origin header (native apps) are not affected.
    cors_origins: list[str] = [
        "https://klettrack.com",
        "https://www.klettrack.com",
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
