from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Space Hub Payments"
    version: str = "0.1.0"
    APP_ENVIRONMENT: str = "development"  # "development" or "production"
    DEBUG: bool = False
    APP_DATABASE_DSN: str = "sqlite:////tmp/spacehub_payments.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Session tokens are issued by the auth service; we only verify them
    AUTH_JWT_SECRET: str = "change-me"

    # M-Pesa Daraja settings
    MPESA_ENVIRONMENT: str = "sandbox"  # "sandbox" or "production"
    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_SHORTCODE: str = ""
    MPESA_PASSKEY: str = ""
    MPESA_CALLBACK_URL: str = ""
    MPESA_TRANSACTION_TYPE: str = "CustomerPayBillOnline"

    # Gateway call policy
    MPESA_TIMEOUT_SECONDS: float = 30.0
    MPESA_MAX_ATTEMPTS: int = 3
    MPESA_RETRY_BACKOFF_SECONDS: float = 0.5
    MPESA_TOKEN_REFRESH_MARGIN_SECONDS: int = 60

    # Pending payments older than this are re-queried by the worker
    MPESA_RECONCILE_AFTER_MINUTES: int = 5

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def is_production(self) -> bool:
        return self.APP_ENVIRONMENT == "production"


settings = Settings()
