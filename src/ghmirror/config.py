from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./ghmirror.db"
    github_token: str = ""
    github_api_url: str = "https://api.github.com"
    webhook_secret: str = ""
    user_id: int = 1  # owner of webhook deliveries that can't be attributed to a tracked repo

    # Webhook queue
    webhook_max_attempts: int = 5
    webhook_base_delay_seconds: float = 1.0
    webhook_max_delay_seconds: float = 900.0
    processor_batch_size: int = 10
    processor_interval_seconds: int = 15

    # Sync jobs
    sync_max_attempts: int = 3
    sync_base_delay_seconds: float = 1.0
    sync_max_delay_seconds: float = 900.0
    sync_freshness_seconds: int = 300
    scheduler_interval_seconds: int = 30
    overview_sync_hour: int = 4

    # Shared
    rate_limit_safety_margin: int = 10
    stale_claim_seconds: int = 300
    retention_days: int = 7
    purge_hour: int = 3

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "GHMIRROR_"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
