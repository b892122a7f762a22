"""
Application configuration management using Pydantic Settings
Handles all environment variables and settlement settings
"""

from pydantic_settings import BaseSettings
from typing import Optional, List
from functools import lru_cache

class Settings(BaseSettings):
    """Main application settings"""

    # Application Settings
    APP_NAME: str = "Marketplace Settlement API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./settlement.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30
    DATABASE_ECHO: bool = False
    SQLITE_BUSY_TIMEOUT: float = 30.0

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_DECODE_RESPONSES: bool = True
    REDIS_MAX_CONNECTIONS: int = 50
    CACHE_TTL_SHORT: int = 60
    CACHE_TTL_DEFAULT: int = 300

    # CORS Configuration
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # Payment Gateway (PayMongo)
    PAYMONGO_SECRET_KEY: str = ""
    PAYMONGO_WEBHOOK_SECRET: str = ""
    PAYMONGO_API_BASE: str = "https://api.paymongo.com/v1"
    PAYMONGO_TIMEOUT_SECONDS: float = 15.0
    PAYMONGO_LIVE_MODE: bool = False
    PAYMENT_RETURN_URL: str = "http://localhost:3000/payment/return"

    # Money rules (amounts in centavos unless noted)
    CURRENCY: str = "PHP"
    CASH_IN_FEE_RATE: float = 1.5
    QRPH_FEE_RATE: float = 2.5
    WITHDRAWAL_FEE_RATE: float = 1.0
    MIN_CASH_IN: int = 100
    MAX_CASH_IN: int = 10_000_000
    MIN_WITHDRAWAL: int = 10_000
    CHECKOUT_EXPIRY_HOURS: int = 24
    QRPH_EXPIRY_MINUTES: int = 30

    # Commission
    DEFAULT_COMMISSION_RATE: float = 5.0
    COMMISSION_DUE_DAYS: int = 7

    # Settlement safety
    ORDER_CLAIM_STALE_MINUTES: int = 10
    ORDER_CLAIM_WAIT_SECONDS: float = 5.0
    ORDER_CLAIM_POLL_INTERVAL: float = 0.1
    IDEMPOTENCY_TTL_DAYS: int = 7
    CIRCUIT_BREAKER_THRESHOLD: int = 5
    CIRCUIT_BREAKER_RESET_SECONDS: int = 60
    MONEY_EPSILON: float = 0.01
    WALLET_RECENT_TRANSACTIONS_LIMIT: int = 20

    # Email Configuration
    MAIL_PROVIDER: str = "smtp"
    MAIL_FROM: str = "no-reply@marketplace.local"
    MAIL_FROM_NAME: str = "Marketplace"
    RESEND_API_KEY: Optional[str] = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = False
    EMAIL_MAX_ATTEMPTS: int = 3
    EMAIL_RETRY_BASE_DELAY: float = 0.5
    ADMIN_NOTIFICATION_EMAIL: Optional[str] = None

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def database_url_async(self) -> str:
        """Convert sync database URL to async"""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
        elif self.DATABASE_URL.startswith("sqlite://"):
            return self.DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://")
        return self.DATABASE_URL

@lru_cache()
def get_settings() -> Settings:
    """
    Create cached settings instance
    This ensures settings are loaded only once
    """
    return Settings()

# Global settings instance
settings = get_settings()
