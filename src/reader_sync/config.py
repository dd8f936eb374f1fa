# ABOUTME: Centralized configuration using Pydantic Settings.
# ABOUTME: Loads sync caps, quota, upstream, and storage settings from env and .env.

from functools import lru_cache
from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Upstream API
    upstream_base_url: str = "https://www.inoreader.com/reader/api/0"
    upstream_access_token: SecretStr | None = None
    upstream_timeout: int = 15
    upstream_user_agent: str = "reader-sync/0.1"
    upstream_service: str = "inoreader"

    # Quota
    daily_quota_limit: int = 100
    quota_reset_timezone: str = "UTC"

    # Fetch scheduling
    global_article_cap_per_sync: int = 100
    per_feed_article_cap: int = 20
    fetch_batch_size: int = 10
    fetch_concurrency: int = 4

    # Reconciliation
    flush_batch_size: int = 100
    sync_max_retries: int = 3
    # Wait before retrying a failed batch; doubles with each attempt
    sync_retry_backoff_minutes: int = 5
    extract_full_content: bool = False
    extract_timeout: int = 15
    extract_user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.3 Safari/605.1.15"
    )

    # Retention
    retention_limit: int = 1000
    prune_chunk_size: int = 200

    # Database
    db_path: Path = Path("./reader_sync.db")
    database_url_override: str | None = None

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    sync_interval_minutes: int = 0

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Build async connection URL, SQLite unless overridden."""
        if self.database_url_override:
            return self.database_url_override
        return f"sqlite+aiosqlite:///{self.db_path}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
