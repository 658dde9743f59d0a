"""
Shared configuration management for the Warehouse Rules platform.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="WAREHOUSE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/warehouse")

    # Rule engine
    rules_backend: str = Field(default="memory", description="memory | postgres")
    rules_cache_enabled: bool = Field(default=False)
    rules_cache_ttl_seconds: int = Field(default=30, ge=1)
    rules_stop_on_first_match: bool = Field(default=False)
    rules_halt_actions_on_failure: bool = Field(default=False)

    # Audit
    audit_timeout_seconds: float = Field(default=2.0, gt=0)
    audit_buffer_size: int = Field(default=1000, ge=1)

    # Observability
    enable_tracing: bool = Field(default=False)
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
