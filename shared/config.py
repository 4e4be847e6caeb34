"""
Shared configuration management for the Readings Cache service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="READINGS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External stores
    redis_url: str = Field(default="redis://127.0.0.1:6379/0")
    redis_socket_timeout: float = Field(default=5.0, gt=0)
    postgres_dsn: str = Field(default="postgres://localhost:5432/agri")
    postgres_min_pool: int = Field(default=2, ge=1)
    postgres_max_pool: int = Field(default=10, ge=1)
    postgres_command_timeout: float = Field(default=30.0, gt=0)
    readings_table: str = Field(default="readings", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")

    # Caching policies
    default_ttl_seconds: int = Field(default=60, gt=0)
    write_behind_delay_seconds: float = Field(default=0.1, ge=0)
    write_behind_history_size: int = Field(default=1000, ge=1)
    shutdown_drain_timeout_seconds: float = Field(default=5.0, ge=0)

    # Observability
    metrics_port: Optional[int] = Field(default=None)


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
