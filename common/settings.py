import os
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./settlement.db")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "creator-settlement")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    razorpay_key_id: str = os.getenv("RAZORPAY_KEY_ID", "")
    razorpay_key_secret: str = os.getenv("RAZORPAY_KEY_SECRET", "")
    razorpay_webhook_secret: str = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
    razorpayx_account_number: str = os.getenv("RAZORPAYX_ACCOUNT_NUMBER", "")
    razorpay_base_url: str = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")
    gateway_timeout_seconds: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
    payout_timeout_seconds: float = float(os.getenv("PAYOUT_TIMEOUT_SECONDS", "30"))

    storage_endpoint_url: str = os.getenv("STORAGE_ENDPOINT_URL", "")
    storage_bucket: str = os.getenv("STORAGE_BUCKET", "creator-uploads")
    storage_region: str = os.getenv("STORAGE_REGION", "auto")
    storage_access_key_id: str = os.getenv("STORAGE_ACCESS_KEY_ID", "")
    storage_secret_access_key: str = os.getenv("STORAGE_SECRET_ACCESS_KEY", "")
    upload_url_ttl_seconds: int = int(os.getenv("UPLOAD_URL_TTL_SECONDS", "900"))
    download_url_ttl_seconds: int = int(os.getenv("DOWNLOAD_URL_TTL_SECONDS", "3600"))

    brevo_api_key: str = os.getenv("BREVO_API_KEY", "")
    brevo_from_email: str = os.getenv("BREVO_FROM_EMAIL", "noreply@example.com")
    brevo_from_name: str = os.getenv("BREVO_FROM_NAME", "Creator Store")

    default_currency: str = os.getenv("DEFAULT_CURRENCY", "INR")
    default_platform_fee_rate: float = float(os.getenv("DEFAULT_PLATFORM_FEE_RATE", "5.0"))
    min_withdrawal_amount: int = int(os.getenv("MIN_WITHDRAWAL_AMOUNT", "10000"))  # paise

    outbox_poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))
    outbox_batch_size: int = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))
    lease_ttl_seconds: int = int(os.getenv("LEASE_TTL_SECONDS", "120"))

settings = Settings()
