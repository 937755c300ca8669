"""Configuration for blog_archiver.

Settings are read from environment variables prefixed with BLOG_ARCHIVER_
(for example BLOG_ARCHIVER_DB_PATH) and an optional .env file.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_db_path() -> Path:
    return Path.home() / ".blog_archiver" / "blog_archiver.db"


class ServerConfig(BaseSettings):
    """Runtime settings for the server, importers and job orchestrator."""

    model_config = SettingsConfigDict(
        env_prefix="BLOG_ARCHIVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    name: str = "blog_archiver"
    log_level: str = "INFO"
    db_path: Path = Field(default_factory=_default_db_path)

    # HTTP
    user_agent: str = "BlogArchiver/1.0 (+feed import)"
    http_timeout: float = Field(default=30.0, gt=0)

    # Live feed pagination
    feed_page_cap: int = Field(default=50, ge=1)
    feed_page_delay: float = Field(default=0.5, ge=0)

    # Wayback snapshot crawl
    snapshot_cap: int = Field(default=150, ge=2)
    snapshot_delay: float = Field(default=1.1, ge=0)
    max_retries: int = Field(default=3, ge=0)
    backoff_base: float = Field(default=1.1, ge=0)

    # Persistence
    batch_size: int = Field(default=50, ge=1)
    history_page_size: int = Field(default=500, ge=1)

    # Job tracking
    completed_job_ttl: float = Field(default=10.0, ge=0)
    job_log_cap: int = Field(default=50, ge=1)

    # Text analysis
    summary_sentences: int = Field(default=3, ge=1)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


def load_config() -> ServerConfig:
    """Build a fresh configuration from the current environment."""
    return ServerConfig()


@lru_cache
def get_config() -> ServerConfig:
    """Return the process-wide configuration, loading it on first use."""
    return load_config()
