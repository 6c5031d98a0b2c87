# settings.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Literal


DEFAULT_JWT_SECRET = "dev-secret-change-me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: Literal["dev", "test", "staging", "prod"] = "dev"
    LOG_LEVEL: str = "INFO"

    # -----------------------
    # DB / store
    # -----------------------
    DATABASE_URL: str = Field(default="")
    # "memory" keeps everything in-process (dev/tests)
    BILLING_STORE: Literal["postgres", "memory"] = "postgres"
    DB_STATEMENT_TIMEOUT_MS: int = 5000

    # -----------------------
    # JWT
    # -----------------------
    JWT_SECRET: str = Field(default=DEFAULT_JWT_SECRET, min_length=16)
    JWT_ALG: str = Field(default="HS256")
    JWT_ACCESS_MINUTES: int = Field(default=60)

    # -----------------------
    # Lifecycle
    # -----------------------
    TRANSACTION_EXPIRY_HOURS: int = 24 * 7
    PAYMENT_EXPIRY_HOURS: int = 24

    # unique code for manual bank transfers
    UNIQUE_CODE_LOOKBACK_HOURS: int = 24
    UNIQUE_CODE_MAX_ATTEMPTS: int = 25

    # per-transaction lock
    LOCK_TIMEOUT_MS: int = 2000
    LOCK_RETRY_ATTEMPTS: int = 3
    LOCK_RETRY_BACKOFF_MS: int = 50

    # -----------------------
    # Payment gateway (Mode Switch)
    # -----------------------
    GATEWAY_MODE: Literal["sandbox", "real"] = "sandbox"
    GATEWAY_BASE_URL: str = ""
    GATEWAY_API_KEY: str = ""
    GATEWAY_HTTP_TIMEOUT_S: float = 20.0
    GATEWAY_WEBHOOK_SECRET: str = ""

    # -----------------------
    # Expiry sweep
    # -----------------------
    CRON_SECRET: str = ""
    SWEEP_BATCH_SIZE: int = 100
    SWEEP_POLL_SECONDS: int = 60

    # -----------------------
    # Notifications
    # -----------------------
    NOTIFY_WEBHOOK_URL: str = ""
    NOTIFY_HTTP_TIMEOUT_S: float = 5.0


settings = Settings()


def validate_env_settings() -> None:
    """
    Fail fast on misconfigured staging/prod deployments.
    dev/test may run with defaults.
    """
    env = (settings.ENV or "dev").strip().lower()
    if env not in ("staging", "prod"):
        return

    missing: list[str] = []

    if settings.BILLING_STORE == "postgres" and not (settings.DATABASE_URL or "").strip():
        missing.append("DATABASE_URL")

    secret = settings.JWT_SECRET or ""
    if secret == DEFAULT_JWT_SECRET or len(secret) < 32:
        missing.append("JWT_SECRET")

    if not (settings.CRON_SECRET or "").strip():
        missing.append("CRON_SECRET")

    if not (settings.GATEWAY_WEBHOOK_SECRET or "").strip():
        missing.append("GATEWAY_WEBHOOK_SECRET")

    if settings.GATEWAY_MODE == "real":
        if not (settings.GATEWAY_BASE_URL or "").strip():
            missing.append("GATEWAY_BASE_URL")
        if not (settings.GATEWAY_API_KEY or "").strip():
            missing.append("GATEWAY_API_KEY")

    if missing:
        raise RuntimeError(f"Missing or insecure settings for ENV={env}: {', '.join(missing)}")
