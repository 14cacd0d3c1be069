"""Application configuration via environment variables."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./payment_integration.db"
    log_level: str = "INFO"

    # Outbound provider calls
    provider_timeout_seconds: float = 15.0
    token_expiry_margin_seconds: int = 60  # refresh OAuth tokens this long before expiry

    # Card processor
    stripe_base_url: str = "https://api.stripe.com"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_signature_tolerance_seconds: int = 300

    # Orange Money
    orange_money_base_url: str = "https://api.orange.com/orange-money-webpay/dev/v1"
    orange_money_client_id: str = ""
    orange_money_client_secret: str = ""
    orange_money_merchant_key: str = ""
    orange_money_webhook_secret: str = ""

    # AfriMoney
    afrimoney_base_url: str = "https://api.afrimoney.com/v1"
    afrimoney_api_user: str = ""
    afrimoney_api_key: str = ""
    afrimoney_subscription_key: str = ""
    afrimoney_webhook_secret: str = ""
    afrimoney_environment: str = "sandbox"

    callback_base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    # Webhook pipeline
    webhook_workers: int = 4
    webhook_max_retries: int = 3
    webhook_retention_days: int = 90
    webhook_retry_interval_seconds: int = 300

    # Reconciliation
    reconciliation_stale_after_seconds: int = 900
    reconciliation_interval_seconds: int = 60
    reconciliation_concurrency_per_provider: int = 5
    reconciliation_batch_size: int = 200

    # Downstream ledger
    ledger_service_url: Optional[str] = None
    outbox_dispatch_interval_seconds: int = 10

    background_jobs_enabled: bool = True
    provider_catalog_path: Optional[str] = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
