"""
Configuration settings for the OTC Ledger Backend.

This module handles application configuration using Pydantic settings.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = "OTC Ledger Backend"
    api_version: str = "v1"
    debug: bool = False

    # Database Configuration
    database_url: str = "sqlite+aiosqlite:///./otc_ledger.db"
    db_echo: bool = False
    db_pool_size: int = 20
    db_max_overflow: int = 10

    # Identity (authenticated upstream, forwarded as a header)
    actor_header: str = "X-User-Id"

    # File storage for receipt / payment images
    uploads_dir: str = "./data/uploads"
    uploads_url_prefix: str = "/api/uploads"

    # Redis Configuration (notification fan-out across workers)
    redis_url: str = "redis://localhost:6379/0"
    redis_decode_responses: bool = True
    redis_fanout_enabled: bool = False
    redis_notification_channel: str = "notifications"

    # Notification webhook
    notification_webhook_enabled: bool = False
    notification_webhook_url: str = "http://localhost:3001/webhook/notification"
    notification_webhook_secret: str = "change-me"
    notification_webhook_timeout: float = 5.0

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
