"""Configuration settings using Pydantic."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

# Docs: https://docs.pydantic.dev/2.8/concepts/pydantic_settings/


class Settings(BaseSettings):
    # App name used in logs
    app_name: str = "storycredits"

    # Allows to detect type of deployment
    environment: Literal["dev", "prod"]

    # PostgreSQL connection string (postgresql+asyncpg://...)
    database_url: str

    # Logfire token
    logfire_token: str

    # --- Payment providers ---
    # A missing secret leaves that provider's webhooks unverified

    # NOWPayments IPN secret (HMAC-SHA512)
    nowpayments_ipn_secret: str | None = None

    # Cryptomus payment API key (MD5 sign)
    cryptomus_api_key: str | None = None

    # Paddle notification destination secret (HMAC-SHA256)
    paddle_webhook_secret: str | None = None

    # LemonSqueezy signing secret (HMAC-SHA256)
    lemonsqueezy_webhook_secret: str | None = None

    # Bearer token for /admin/* endpoints, admin API is disabled when unset
    admin_api_token: str | None = None

    # --- Ledger tunables ---

    # Same payment_id + status within this window is treated as a redelivery
    webhook_dedup_window_seconds: int = 300

    # Processed webhook events older than this are deleted
    webhook_retention_days: int = 90

    # Spent or burned grants expired longer than this are deleted
    grant_retention_days: int = 30

    # Period of the background maintenance loop
    maintenance_interval_seconds: int = 600

    # Unprocessed verified events older than this are replayed
    replay_after_seconds: int = 300

    # --- Non essentials ---

    # WebApp server config
    webapp_host: str = "127.0.0.1"
    webapp_port: int = 8081

    model_config = SettingsConfigDict(
        # `.env.prod` takes priority over `.env`
        env_file=(".env", ".env.prod"),
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra fields from .env
    )

    @property
    def provider_secrets(self) -> dict[str, str | None]:
        return {
            "nowpayments": self.nowpayments_ipn_secret,
            "cryptomus": self.cryptomus_api_key,
            "paddle": self.paddle_webhook_secret,
            "lemonsqueezy": self.lemonsqueezy_webhook_secret,
        }


settings = Settings()
