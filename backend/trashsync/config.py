from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./data/trashsync.db"

    # App settings
    app_name: str = "TRaSH Guides Sync"
    debug: bool = False

    # Guide cache
    cache_stale_after_hours: int = 12
    cache_compression_enabled: bool = True

    # Upstream guide repository
    github_token: Optional[str] = None
    trash_repo_owner: str = "TRaSH-Guides"
    trash_repo_name: str = "Guides"
    trash_repo_branch: str = "master"
    upstream_timeout_seconds: float = 15.0

    # Remote instances
    arr_timeout_seconds: float = 30.0
    deploy_throttle_seconds: float = 0.2
    retry_base_delay_seconds: float = 1.0
    max_retries: int = 3

    # Backups (0 retention days = never expire)
    backup_retention_days: int = 30
    backup_cleanup_interval_seconds: int = 3600
    orphan_grace_days: int = 7

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
