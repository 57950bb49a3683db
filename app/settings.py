# ==== APPLICATION SETTINGS CONFIGURATION ==== #

"""
Application settings configuration for OrderDesk.

This module provides centralized configuration management using Pydantic Settings
with environment variable loading and validation for the order lifecycle service,
its payment webhook, outbound notifications and scheduled reminder sweep.

Business configuration (tax, invoice and reminder settings) is not read from the
environment; it lives in the transactional store, see app.storage.configuration.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ==== MAIN SETTINGS CLASS ==== #


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Provides configuration for database connectivity, authentication, payment
    webhook verification, notifications, observability and scheduling with
    validation and type safety.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

    # --► CORE APPLICATION SETTINGS
    APP_ENV: str = "dev"
    SERVICE_NAME: str = "orderdesk"
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILES: bool = True

    # --► DATABASE CONFIGURATION
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5
    DB_STATEMENT_TIMEOUT_MS: int = 15_000
    DB_CONNECT_TIMEOUT_SECONDS: float = 10.0

    # --► AUTHENTICATION SETTINGS
    JWT_SECRET: str = "change-me-please-and-keep-long-random"
    JWT_ALGORITHM: str = "HS256"

    # --► PAYMENT WEBHOOK VERIFICATION
    PAYMENT_WEBHOOK_SIGNING_KEY: str = ""
    PAYMENT_WEBHOOK_REPLAY_WINDOW_SECONDS: int = 300

    # --► OUTBOUND NOTIFICATIONS (MAILGUN)
    NOTIFICATIONS_ENABLED: bool = False
    MAILGUN_API_KEY: str | None = None
    MAILGUN_DOMAIN: str | None = None
    MAILGUN_BASE_URL: str = "https://api.mailgun.net/v3"
    EMAIL_FROM: str = "OrderDesk <no-reply@orderdesk.local>"
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    # --► BUSINESS OPERATION LIMITS
    DEFAULT_JURISDICTION: str = "AB"
    BULK_TRANSITION_MAX_ORDERS: int = 100
    REMINDER_SEND_DELAY_SECONDS: float = 0.5

    # --► OBSERVABILITY CONFIGURATION
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None
    OTEL_EXPORTER_OTLP_HEADERS: str | None = None
    OTEL_SERVICE_NAME: str | None = None
    OTEL_RESOURCE_ATTRIBUTES: str | None = None

    # --► PREFECT WORKFLOW ORCHESTRATION
    PREFECT_REMINDER_DEPLOYMENT_NAME: str = "payment-reminders-daily"
    PREFECT_REMINDER_SCHEDULE_CRON: str = "0 14 * * *"

    # --► METRICS CONFIGURATION
    PROMETHEUS_SCRAPE_PATH: str = "/metrics"

    @field_validator("DEFAULT_JURISDICTION")
    @classmethod
    def _normalize_jurisdiction(cls, value: str) -> str:
        return value.strip().upper()


# ==== GLOBAL SETTINGS INSTANCE ==== #


# Global settings instance for application-wide access
settings = Settings()


def get_settings() -> Settings:
    """
    Get global settings instance.

    Returns:
        Settings: Global application settings instance
    """
    return settings
