"""
Shared configuration management for the Cloaking Gateway.
"""

from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_JWT_SECRET = "change-me-in-production"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    env: str = Field(default="local", validation_alias="ACCESS_ENV")
    log_level: str = Field(default="info", validation_alias="ACCESS_LOG_LEVEL")

    # Upstream cloaking API
    cloaking_api_base_url: str = Field(
        default="https://cloaking.house/api",
        validation_alias="CLOAKING_API_BASE_URL",
    )
    cloaking_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("CLOAKING_API_KEY", "API_KEY"),
    )
    request_timeout: float = Field(default=30.0, validation_alias="CLOAKING_REQUEST_TIMEOUT")
    max_attempts: int = Field(default=5, validation_alias="CLOAKING_MAX_ATTEMPTS")
    backoff_seconds: float = Field(default=2.0, validation_alias="CLOAKING_BACKOFF_SECONDS")

    # Reference data cache
    cache_refresh_interval: int = Field(default=3600, validation_alias="CLOAKING_CACHE_REFRESH_INTERVAL")
    cache_warm_concurrency: int = Field(default=3, validation_alias="CLOAKING_CACHE_WARM_CONCURRENCY")
    warm_on_startup: bool = Field(default=True, validation_alias="CLOAKING_WARM_ON_STARTUP")

    # Security
    jwt_secret: str = Field(default=DEFAULT_JWT_SECRET, validation_alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
