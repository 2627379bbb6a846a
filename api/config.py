"""API configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development|production
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "postgresql+asyncpg://snaplove:snaplove@db:5432/snaplove"

    JWT_SECRET: str = "changeme"
    JWT_ALGORITHM: str = "HS256"

    # Duitku
    DUITKU_MERCHANT_CODE: str = ""
    DUITKU_API_KEY: str = ""
    DUITKU_SANDBOX_URL: str = "https://sandbox.duitku.com/webapi/api/merchant"
    DUITKU_PRODUCTION_URL: str = "https://passport.duitku.com/webapi/api/merchant"
    DUITKU_TIMEOUT_SECONDS: float = 15.0

    BACKEND_URL: str = "http://localhost:4000"
    FRONTEND_URL: str = "http://localhost:3000"

    SUBSCRIPTION_PRICE: int = 45000  # IDR, one month
    PAYMENT_EXPIRY_MINUTES: int = 1440

    # Email (SMTP)
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_TIMEOUT_SECONDS: int = 20
    EMAIL_FROM: str | None = None
    EMAIL_FROM_NAME: str = "Snaplove"
    APP_NAME: str = "Snaplove"

    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: int = 24 * 60 * 60

    class Config:
        env_file = ".env"
        extra = "allow"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def duitku_base_url(self) -> str:
        return self.DUITKU_PRODUCTION_URL if self.is_production else self.DUITKU_SANDBOX_URL

    @property
    def callback_url(self) -> str:
        return f"{self.BACKEND_URL}/api/subscription/callback"

    @property
    def return_url(self) -> str:
        return f"{self.FRONTEND_URL}/subscription/payment/status"


settings = Settings()
