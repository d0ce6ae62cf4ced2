"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all environment variables with validation.

Usage:
    from utils.config import settings

    redis_url = settings.REDIS_URL
    lease_duration = settings.LEASE_DURATION
"""

import os
import socket
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10)

    # Queue Configuration (Redis Streams consumer group)
    EXPORT_STREAM: str = Field(default="exports.ready")
    EXPORT_CONSUMER_GROUP: str = Field(default="export-workers")
    EXPORT_CONSUMER_NAME: str = Field(default_factory=_default_consumer_name)
    EXPORT_DLQ_STREAM: str = Field(default="exports.dlq")
    QUEUE_VISIBILITY_TIMEOUT: int = Field(default=900, ge=1)
    QUEUE_MAX_DELIVERIES: int = Field(default=5, ge=1)
    QUEUE_BLOCK_MS: int = Field(default=1000, ge=0)
    QUEUE_BATCH_SIZE: int = Field(default=10, ge=1)
    WORKER_CONCURRENCY: int = Field(default=2, ge=1)
    SHUTDOWN_GRACE_PERIOD: float = Field(default=30.0, ge=0)

    # Lease Configuration
    LEASE_BACKEND: str = Field(default="redis", pattern="^(redis|memory)$")
    LEASE_KEY_PREFIX: str = Field(default="export-lease:")
    LEASE_DURATION: int = Field(default=1800, ge=1)
    LEASE_RETENTION: int = Field(default=172800, ge=1)

    # Heartbeat Configuration
    HEARTBEAT_INTERVAL: int = Field(default=120, ge=1)
    VISIBILITY_BUFFER: int = Field(default=60, ge=0)
    HEARTBEAT_SHUTDOWN_TIMEOUT: float = Field(default=5.0, ge=0)

    # Extraction Configuration
    CHECKPOINT_INTERVAL: float = Field(default=300.0, ge=0)
    MAX_CONCURRENT_UPLOADS: int = Field(default=5, ge=1)
    SPOOL_MAX_MEMORY: int = Field(default=8 * 1024 * 1024, ge=0)
    DOWNLOAD_CHUNK_SIZE: int = Field(default=64 * 1024, ge=1)
    DESTINATION_ROOT: str = Field(default="exports")

    # Export API Configuration
    EXPORT_API_BASE: str = Field(default="http://export-api:8080")
    API_TIMEOUT: int = Field(default=300)
    EXPORT_API_MAX_RETRIES: int = Field(default=3, ge=0)
    CIRCUIT_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    CIRCUIT_RESET_TIMEOUT: float = Field(default=60.0, ge=0)

    # SFTP Configuration
    SFTP_HOST: str = Field(default="")
    SFTP_PORT: int = Field(default=22)
    SFTP_USERNAME: str = Field(default="")
    SFTP_KEY_PATH: str = Field(default="/run/secrets/id_rsa")
    SFTP_KEY_PASSPHRASE: str | None = Field(default=None)
    SFTP_REMOTE_BASE: str = Field(default="/upload")
    SFTP_TIMEOUT: int = Field(default=15)
    SFTP_UPLOAD_RETRIES: int = Field(default=3, ge=0)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="export-worker")
    APP_VERSION: str = Field(default="0.1.0")

    @model_validator(mode="after")
    def check_heartbeat_interval(self) -> "Settings":
        """Heartbeat renewals must land before the queue reclaims the message."""
        if self.HEARTBEAT_INTERVAL >= self.QUEUE_VISIBILITY_TIMEOUT:
            raise ValueError(
                "HEARTBEAT_INTERVAL must be shorter than QUEUE_VISIBILITY_TIMEOUT "
                f"({self.HEARTBEAT_INTERVAL} >= {self.QUEUE_VISIBILITY_TIMEOUT})"
            )
        return self


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
