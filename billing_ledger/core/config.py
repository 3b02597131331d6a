"""
Service settings, loaded from the environment (and an optional .env file).

Secrets are optional at load time: a missing provider secret is reported as
ProviderMisconfigured when that provider is actually used, so one unconfigured
gateway never takes the whole service down.
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=True)

    APP_NAME: str = "billing-ledger"
    LOG_LEVEL: str = "INFO"

    # Storage (postgresql+asyncpg:// in production)
    DATABASE_URL: str = "postgresql+asyncpg://localhost/billing"
    DB_ECHO: bool = False

    SENTRY_DSN: Optional[str] = None

    # Outbound HTTP to gateways and the rate API
    HTTP_TIMEOUT_SECONDS: float = 15.0

    ENABLED_PROVIDERS: list[str] = ["PAYOS", "SEPAY", "LEMON_SQUEEZY"]
    CHECKOUT_CREATION_MAX_ATTEMPTS: int = 3
    PAYMENT_RETURN_URL: str = "http://localhost:3001/account/billing?payment=success"
    PAYMENT_CANCEL_URL: str = "http://localhost:3001/account/billing?payment=cancelled"

    # PayOS (VietQR checkout, checksum-signed webhooks)
    PAYOS_API_BASE: str = "https://api-merchant.payos.vn"
    PAYOS_CLIENT_ID: Optional[str] = None
    PAYOS_API_KEY: Optional[str] = None
    PAYOS_CHECKSUM_KEY: Optional[str] = None
    PAYOS_MIN_AMOUNT: int = 2000

    # SePay (bank transfer matched on memo)
    SEPAY_QR_BASE: str = "https://qr.sepay.vn/img"
    SEPAY_WEBHOOK_KEY: Optional[str] = None
    SEPAY_BANK_NAME: str = "MBBank"
    SEPAY_ACCOUNT_NUMBER: Optional[str] = None
    SEPAY_MEMO_PREFIX: str = "OCR"
    SEPAY_MIN_AMOUNT: int = 2000

    # Lemon Squeezy (card / international, HMAC-signed webhooks)
    LEMON_API_BASE: str = "https://api.lemonsqueezy.com/v1"
    LEMON_API_KEY: Optional[str] = None
    LEMON_STORE_ID: Optional[str] = None
    LEMON_VARIANT_ID: Optional[str] = None
    LEMON_WEBHOOK_SECRET: Optional[str] = None
    LEMON_MIN_AMOUNT: int = 100

    # Exchange rates (USD based table)
    CURRENCY_API_BASE: str = "https://v6.exchangerate-api.com/v6"
    CURRENCY_API_KEY: Optional[str] = None
    RATE_REFRESH_INTERVAL_SECONDS: int = 1800

    # Pending transaction expiry
    PENDING_EXPIRE_TTL_MINUTES: int = 15
    PENDING_EXPIRE_SCAN_MINUTES: int = 5

    # Pay-as-you-go
    PAYG_DEFAULT_ENABLED: bool = False
    PAYG_CURRENCY: str = "USD"
    # feature -> [input, output] minor units per 1000 tokens
    FEATURE_RATES: dict[str, list[int]] = {
        "ocr": [10, 10],
        "ai_reconstruct": [30, 60],
        "ai_translate": [30, 60],
        "ai_extract": [30, 60],
    }

    CRON_SECRET: Optional[str] = None
    INTERNAL_API_KEY: Optional[str] = None

    RUN_JOBS_IN_PROCESS: bool = False
    JOBS_METRICS_PORT: int = 8002


settings = Settings()
