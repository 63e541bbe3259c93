"""Configuration management for the publication engine."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "postgresql://localhost/publisher"
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10
    db_command_timeout: int = 60

    # System
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    environment: Literal["development", "production", "test"] = "development"

    # Scheduler
    publish_poll_interval_seconds: int = 60
    publish_lease_ttl_seconds: int = 300
    scheduler_instance_id: Optional[str] = None  # Defaults to hostname + random suffix

    # Retry / credential refresh
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    credential_min_refresh_interval_seconds: float = 5.0
    credential_refresh_timeout_seconds: float = 30.0

    # Email transport
    email_transport: Literal["sendgrid", "relay"] = "sendgrid"
    sendgrid_api_key: str = ""
    email_relay_url: str = ""
    email_relay_token: str = ""
    email_relay_refresh_token: str = ""
    email_auth_refresh_url: str = ""
    email_auth_api_key: str = ""
    email_from_address: str = "newsletter@example.com"
    email_from_name: str = "Newsletter"

    # Content validation
    email_min_content_length: int = 100
    email_max_content_length: int = 50000


# Global settings instance
settings = Settings()
