"""Configuration settings for Bravo."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

from bravo.utils import get_bravo_home


class Settings(BaseSettings):
    """Settings loaded from ``BRAVO_*`` environment variables or ``.env``."""

    # Supabase (remote record store). Local-only when either is missing.
    supabase_url: str | None = None
    supabase_key: str | None = None

    # Remote calls
    remote_timeout: float = 10.0  # seconds per request
    remote_retries: int = 2  # extra attempts for transient failures
    backoff_base: float = 0.5  # seconds
    backoff_cap: float = 30.0  # seconds

    # Local cache and sync queue
    data_dir: Path | None = None
    db_path: Path | None = None
    auto_push: bool = True
    sync_max_retries: int = 5

    # Engine
    cas_max_attempts: int = 5
    review_min_length: int = 50

    log_level: str = "INFO"

    class Config:
        env_prefix = "BRAVO_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def cloud_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def resolve_data_dir(self) -> Path:
        return Path(self.data_dir).expanduser() if self.data_dir else get_bravo_home()

    def resolve_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return self.resolve_data_dir() / "bravo.db"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
