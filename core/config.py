"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for GRC Admin happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL). List fields accept JSON arrays
      (ALLOWED_HOSTS='["api.example.com"]').

  @model_validator(mode="after"): Cross-field checks on the timeout and
      pagination bounds. A bad value is a hard startup failure rather than a
      silently clamped one.

Layer rule: core/ is the kernel. This module may not import from api/ or store/.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("grcadmin.config")

# Hard ceiling for page sizes; MAX_PAGE_SIZE may lower it but not raise it.
PAGE_SIZE_CEILING = 200


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the storage format for timestamps)."""
    return datetime.now(timezone.utc).isoformat()


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Backend
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///grcadmin.db"
    # Upper bound for every backend call made by the repository.
    request_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Pagination and dashboards
    # ------------------------------------------------------------------

    default_page_size: int = 20
    max_page_size: int = PAGE_SIZE_CEILING
    # Row cap for the full fetches behind the security dashboard.
    dashboard_fetch_limit: int = 5000

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    rate_limit_default: str = "120/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_bounds(self) -> "Settings":
        """Reject timeout and page-size combinations the query builder cannot honour."""
        if self.request_timeout_seconds <= 0:
            raise ValueError("REQUEST_TIMEOUT_SECONDS must be greater than 0.")
        if not 1 <= self.max_page_size <= PAGE_SIZE_CEILING:
            raise ValueError(f"MAX_PAGE_SIZE must be between 1 and {PAGE_SIZE_CEILING}.")
        if not 1 <= self.default_page_size <= self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE must be between 1 and MAX_PAGE_SIZE.")
        if self.dashboard_fetch_limit < 1:
            raise ValueError("DASHBOARD_FETCH_LIMIT must be at least 1.")
        self.log_level = self.log_level.upper()
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            logger.warning("Unknown LOG_LEVEL %r, falling back to INFO", self.log_level)
            self.log_level = "INFO"
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
