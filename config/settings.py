"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Managed backend (PostgREST-style REST endpoint)
    backend_url: str = "http://localhost:54321/rest/v1"
    backend_api_key: Optional[str] = None
    backend_timeout_seconds: float = 30.0
    backend_max_concurrent_requests: int = 10

    # Cache settings
    cache_cleanup_interval_seconds: float = 60
    cache_revalidation_workers: int = 4
    cache_coalesce_requests: bool = False

    # Persistence (best-effort, survives restarts)
    cache_persistence_enabled: bool = True
    cache_directory: Path = Path("./cache")
    cache_db_name: str = "dashboard_cache.db"

    # Warm-up throttling and monitoring
    cache_prefetch_delay_seconds: float = 0.1
    cache_monitor_interval_seconds: float = 0  # 0 disables the performance log

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def cache_db_path(self) -> Path:
        return self.cache_directory / self.cache_db_name


settings = Settings()
