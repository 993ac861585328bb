"""
Shared configuration management for the admission control service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field can be overridden through an ``ACCESS_``-prefixed
    environment variable or a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Bucket store lifecycle
    rate_limit_sweep_interval_seconds: float = Field(default=300.0)
    rate_limit_idle_seconds: float = Field(default=600.0)
    rate_limit_shards: int = Field(default=64)

    # Named policies (window in milliseconds, max requests per window)
    general_window_ms: int = Field(default=60_000)
    general_max: int = Field(default=100)
    query_window_ms: int = Field(default=60_000)
    query_max: int = Field(default=30)
    upload_window_ms: int = Field(default=60_000)
    upload_max: int = Field(default=5)
    admin_window_ms: int = Field(default=60_000)
    admin_max: int = Field(default=60)
    health_window_ms: int = Field(default=60_000)
    health_max: int = Field(default=300)

    # Optional YAML file with per-policy overrides
    rate_limits_file: Optional[str] = Field(default=None)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
