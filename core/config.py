# core/config.py
"""
Runtime settings for the Ad Library scraper.

Every knob can be overridden through the environment (or a ``.env`` file)
using the upper‑case field name, e.g. ``REDIS_URL=redis://cache:6379/0`` or
``BROWSER_MAX=4``.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from the environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Service
    # ------------------------------------------------------------------
    PROJECT_NAME: str = "Ad Library Scraper"
    PORT: int = 8000
    DEBUG: bool = False
    WORKERS: int = 1
    LOG_LEVEL: str = "INFO"
    ALLOWED_HOSTS: List[str] = Field(default_factory=lambda: ["*"])

    # ------------------------------------------------------------------
    # Target site
    # ------------------------------------------------------------------
    AD_LIBRARY_URL: str = "https://www.facebook.com/ads/library/"
    DEFAULT_COUNTRY: str = "ALL"
    DEFAULT_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    )

    # ------------------------------------------------------------------
    # HTTP connection pool
    # ------------------------------------------------------------------
    HTTP_MAX_CONCURRENT: int = Field(default=100, ge=1)
    HTTP_MAX_QUEUE: int = Field(default=0, ge=0)        # 0 = unbounded
    HTTP_TIMEOUT: float = 30.0
    HTTP_RETRIES: int = Field(default=3, ge=1)
    HTTP_BACKOFF_BASE: float = 0.5
    HTTP_BACKOFF_MAX: float = 2.0
    HTTP_KEEPALIVE_CONNECTIONS: int = 10
    HTTP_KEEPALIVE_EXPIRY: float = 4.0
    HTTP_DRAIN_TIMEOUT: float = 30.0

    # ------------------------------------------------------------------
    # Browser pool
    # ------------------------------------------------------------------
    BROWSER_MAX: int = Field(default=2, ge=1)
    BROWSER_MAX_IDLE: float = 2 * 60
    BROWSER_MAX_LIFETIME: float = 10 * 60
    BROWSER_REAP_INTERVAL: float = 2 * 60
    BROWSER_ACQUIRE_TIMEOUT: float = 30.0
    BROWSER_NAVIGATION_TIMEOUT: float = 30.0
    BROWSER_HEADLESS: bool = True
    BROWSER_IN_CONTAINER: bool = False
    BROWSER_VIEWPORT_WIDTH: int = 1920
    BROWSER_VIEWPORT_HEIGHT: int = 1080
    BROWSER_FALLBACK_ENABLED: bool = True

    # ------------------------------------------------------------------
    # Job queue
    # ------------------------------------------------------------------
    QUEUE_CONCURRENCY: int = Field(default=2, ge=1)
    QUEUE_MAX_RETRIES: int = Field(default=2, ge=0)
    QUEUE_DEFAULT_PRIORITY: int = 1

    # ------------------------------------------------------------------
    # Cache (TTL in seconds)
    # ------------------------------------------------------------------
    CACHE_SEARCH_TTL: int = 60 * 60
    CACHE_SEARCH_MAX_KEYS: int = 1000
    CACHE_STATS_TTL: int = 30 * 60
    CACHE_STATS_MAX_KEYS: int = 500
    CACHE_AI_TTL: int = 24 * 60 * 60
    CACHE_AI_MAX_KEYS: int = 200
    CACHE_SWEEP_INTERVAL: float = 60 * 60
    CACHE_MEMORY_LIMIT_MB: float = 400

    REDIS_URL: Optional[str] = None
    REDIS_SEARCH_TTL: int = 30 * 60
    REDIS_STATS_TTL: int = 15 * 60
    REDIS_AI_TTL: int = 24 * 60 * 60


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process‑wide settings (parsed once)."""
    return Settings()


settings = get_settings()
