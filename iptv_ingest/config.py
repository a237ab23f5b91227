"""
Application Configuration

Load settings from environment variables with validation.
"""

from functools import lru_cache
from typing import Optional
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Environment
    environment: str = "development"
    debug: bool = True

    # Config files
    jobs_config_path: str = "./config/jobs.json"
    cache_policy_path: str = "./config/cache-policy.json"

    # Disk cache
    cache_dir: str = "./cache"
    cache_purge_enabled: bool = False  # dry-run unless "true"

    # Document store
    store_backend: str = "firestore"  # firestore | memory
    firebase_credentials_path: str = "./service-account.json"
    firestore_project_id: Optional[str] = None
    store_collection_prefix: str = ""

    # Metadata authority (TMDB)
    tmdb_api_key: Optional[str] = None
    tmdb_read_access_token: Optional[str] = None
    tmdb_base_url: str = "https://api.themoviedb.org/3"

    # Per-provider in-flight request limits
    tmdb_concurrency: int = 40
    xtream_concurrency: int = 4
    m3u_concurrency: int = 10

    # Fetcher
    fetch_timeout_seconds: float = 30.0
    fetch_max_attempts: int = 3
    fetch_backoff_seconds: float = 1.0
    fetch_backoff_max_seconds: float = 10.0

    # Pipelines
    save_interval_seconds: float = 30.0

    # EPG
    epg_streaming_threshold_bytes: int = 10 * 1024 * 1024  # 10 MiB
    epg_parse_timeout_seconds: float = 30 * 60
    epg_progress_log_seconds: float = 30.0
    epg_stream_grace_seconds: float = 2.0

    # Similar titles
    similar_max_pages: int = 10
    similar_max_consecutive_failures: int = 3

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Scheduler / admin
    disable_scheduler: bool = False
    admin_api_key: str = ""

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
