"""
Configuration and settings for the bus manager service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TOKEN_KEY = "BusManager2024-SecretKey-v1.0.0"


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    app_name: str = Field(default="Bus Manager")
    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    host: str = Field(default="127.0.0.1", env="HOST")
    port: int = Field(default=8000, env="PORT")

    # Document storage (users.json, data.json, settings.json)
    data_dir: str = Field(default="data", env="DATA_DIR")

    # GitHub contents API storage
    github_token: Optional[str] = Field(default=None, env="GITHUB_TOKEN")
    github_owner: Optional[str] = Field(default=None, env="GITHUB_OWNER")
    github_repo: Optional[str] = Field(default=None, env="GITHUB_REPO")
    github_branch: str = Field(default="main", env="GITHUB_BRANCH")
    github_api_url: str = Field(
        default="https://api.github.com", env="GITHUB_API_URL"
    )
    token_encryption_key: str = Field(
        default=DEFAULT_TOKEN_KEY, env="TOKEN_ENCRYPTION_KEY"
    )

    # S3-compatible storage
    cos_endpoint: Optional[str] = Field(default=None, env="COS_ENDPOINT")
    cos_region: Optional[str] = Field(default=None, env="COS_REGION")
    cos_bucket: Optional[str] = Field(default=None, env="COS_BUCKET")
    aws_access_key_id: Optional[str] = Field(
        default=None, env="AWS_ACCESS_KEY_ID"
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None, env="AWS_SECRET_ACCESS_KEY"
    )

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )

    # Assignment jobs
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_queue_key: str = Field(
        default="bus_manager:jobs", env="REDIS_QUEUE_KEY"
    )
    process_jobs_inline: bool = Field(default=True, env="PROCESS_JOBS_INLINE")

    # Google Maps
    google_maps_api_key: Optional[str] = Field(
        default=None, env="GOOGLE_MAPS_API_KEY"
    )
    maps_language: str = Field(default="he")
    maps_region: str = Field(default="IL")

    # Google Sheets
    google_sheets_spreadsheet_id: Optional[str] = Field(
        default=None, env="GOOGLE_SHEETS_SPREADSHEET_ID"
    )
    google_sheets_access_token: Optional[str] = Field(
        default=None, env="GOOGLE_SHEETS_ACCESS_TOKEN"
    )
    google_sheets_api_key: Optional[str] = Field(
        default=None, env="GOOGLE_SHEETS_API_KEY"
    )

    # "open" lets everyone in as the guest admin; "header" reads X-User-Id.
    auth_mode: str = Field(default="open", env="AUTH_MODE")

    # Assignment defaults
    max_bus_capacity: int = Field(default=50)
    max_ride_time_minutes: int = Field(default=60)
    max_total_route_minutes: int = Field(default=90)
    optimizer_seed: Optional[int] = Field(default=None, env="OPTIMIZER_SEED")

    @property
    def github_configured(self) -> bool:
        return bool(self.github_token and self.github_owner and self.github_repo)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
