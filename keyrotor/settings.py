"""Settings and configuration."""
from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///keyrotor.db"

    # Security
    dev_mode: bool = False
    master_key: Optional[str] = None
    kek_id: str = "v1"

    # Rotation
    grace_period_minutes: int = Field(default=60, ge=0)

    # Key pools
    pool_notify_below: int = Field(default=2, ge=0)
    # Pools rotated by `keyrotor pool-rotate`: secret key -> {"grace": minutes}
    pools: Dict[str, Any] = Field(default_factory=dict)

    # Audit log retention (prune-logs)
    log_retention_days: int = Field(default=90, ge=1)

    # System logging of rotation events
    logging_enabled: bool = False
    log_channel: Optional[str] = None

    # Read cache for SecretManager lookups (per process, invalidated on writes)
    cache_enabled: bool = False
    cache_ttl_seconds: int = Field(default=300, ge=1)
    cache_max_size: int = Field(default=1024, ge=1)

    # Grace period reaper
    reaper_interval_seconds: int = Field(default=300, ge=1)

    # Recipes: name -> "module:Class" or {"class": "module:Class", "provider_cleanup": false}
    recipes: Dict[str, Any] = Field(default_factory=dict)

    model_config = SettingsConfigDict(
        env_prefix="KEYROTOR_",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
