"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./credit_ledger.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Security
    JWT_SECRET: str = "change_me_in_production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24
    AUTO_CREATE_DB_SCHEMA: bool = True

    # Billing (1 credit = 1 started minute of call time)
    SECONDS_PER_CREDIT: int = 60
    LEDGER_MUTATION_TIMEOUT_SECONDS: float = 5.0
    LEDGER_MUTATION_MAX_ATTEMPTS: int = 3
    LEDGER_MUTATION_BACKOFF_SECONDS: float = 0.05
    LOW_BALANCE_WARNING_THRESHOLD: int = 10
    LOW_BALANCE_CRITICAL_THRESHOLD: int = 5
    TRIAL_CREDITS: int = 100
    TRIAL_PACKAGE_ID: str = "free-trial"
    DEFAULT_CURRENCY: str = "USD"

    # Reconciliation
    RECONCILE_ON_STARTUP: bool = True
    RECONCILE_INTERVAL_MINUTES: int = 15
    RECONCILE_BATCH_LIMIT: int = 500

    # Call events / notifications
    CALL_WATCHER_ENABLED: bool = True
    CALL_WATCHER_RESUBSCRIBE_BACKOFF_SECONDS: float = 0.5
    CALL_WATCHER_RESUBSCRIBE_MAX_BACKOFF_SECONDS: float = 30.0
    CALL_EVENT_BACKEND: str = "memory"
    CALL_EVENT_CHANNEL_PREFIX: str = "ccl:calls"
    CALL_EVENT_QUEUE_SIZE: int = 1000
    CALL_EVENT_PUBLISH_TIMEOUT_SECONDS: float = 1.0
    NOTIFICATION_BACKEND: str = "log"
    NOTIFICATION_CHANNEL_PREFIX: str = "ccl:notifications"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def validate_security_settings() -> None:
    """Fail fast when insecure default secrets are still configured."""
    insecure_values = {
        "",
        "change_me_in_production",
        "your_jwt_secret_change_in_production",
    }
    jwt_secret = (settings.JWT_SECRET or "").strip()

    if jwt_secret in insecure_values or len(jwt_secret) < 24:
        raise ValueError("JWT_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
