"""
Application settings and configuration.
All secrets are loaded from environment variables.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "TaskFlow"
    app_url: str = "http://localhost:3000"
    debug: bool = False
    timezone: str = "UTC"

    # Database - Use DATA_DIR for persistent volumes
    data_dir: str = "."

    @property
    def database_url(self) -> str:
        """Database URL with support for persistent volumes."""
        return f"sqlite+aiosqlite:///{self.data_dir}/taskflow.db"

    # Cron trigger (Authorization: Bearer <secret>); open when unset
    cron_secret: Optional[str] = None

    # In-process scheduler
    scheduler_enabled: bool = True
    dispatch_interval_seconds: int = 60
    daily_summary_enabled: bool = False
    daily_summary_hour: int = 8

    # Dispatch engine
    dispatch_batch_size: int = 50
    dispatch_max_concurrency: int = 4
    dispatch_tick_budget_seconds: float = 50.0
    claim_lease_seconds: int = 300
    max_dispatch_attempts: int = 5
    retry_backoff_seconds: int = 60
    default_channels: List[str] = ["whatsapp"]

    # WhatsApp Web gateway (self-hosted, QR-paired session)
    whatsapp_gateway_url: str = "http://localhost:3001"
    whatsapp_gateway_api_key: Optional[str] = None
    whatsapp_session_name: str = "default"
    whatsapp_init_timeout_seconds: float = 60.0
    whatsapp_pairing_timeout_seconds: float = 180.0
    whatsapp_send_timeout_seconds: float = 30.0
    whatsapp_poll_interval_seconds: float = 2.0
    whatsapp_auto_connect: bool = True
    whatsapp_auto_reconnect: bool = True
    whatsapp_reconnect_delay_seconds: float = 10.0
    whatsapp_max_reconnect_attempts: int = 5

    # Twilio WhatsApp API (stateless fallback channel)
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_whatsapp_number: Optional[str] = None  # Format: whatsapp:+14155238886

    # Telegram Bot API
    telegram_bot_token: Optional[str] = None
    telegram_api_url: str = "https://api.telegram.org"

    # SMTP email
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    email_from: str = "noreply@taskflow.local"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
