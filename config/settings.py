"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Resilience layer defaults, loaded from RESILIENCE_* environment variables."""

    # Cache settings
    cache_default_ttl_seconds: float = Field(default=300.0, ge=0)
    cache_sweep_interval_seconds: Optional[float] = Field(default=60.0, gt=0)
    cache_max_size: Optional[int] = Field(default=None, ge=1)
    cache_persistence_prefix: str = "cache_"
    # Single-flight loading is off unless asked for
    cache_coalesce_loads: bool = False

    # Circuit breaker
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_timeout_seconds: float = Field(default=60.0, ge=0)

    # Retry defaults (the network-failure policy)
    retry_max_attempts: int = Field(default=4, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="RESILIENCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
