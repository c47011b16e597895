"""
Configuration management for the billing service.
Loads settings from environment variables using Pydantic Settings.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./storefront_billing.sqlite"

    @property
    def database_url_async(self) -> str:
        """
        Transform DATABASE_URL to use the appropriate async driver.
        - PostgreSQL: postgresql+asyncpg://...
        - SQLite: sqlite+aiosqlite:///...
        """
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("sqlite://"):
            return self.DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return self.DATABASE_URL

    # Application
    APP_NAME: str = "Storefront Billing"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:3000"

    # Public base URL used to build gateway callback URLs
    APP_BASE_URL: str = "http://localhost:8000"

    # Privileged actor key (withdrawal processing, affiliate settings)
    ADMIN_API_KEY: str = ""

    # SSLCommerz Payment Configuration
    SSLCOMMERZ_STORE_ID: str = ""
    SSLCOMMERZ_STORE_PASSWORD: str = ""
    SSLCOMMERZ_IS_LIVE: bool = False
    DEFAULT_CURRENCY: str = "BDT"

    # Subscription Settings
    TRIAL_PERIOD_DAYS: int = 14
    GRACE_PERIOD_DAYS: int = 7  # Days after period end before the subscription counts as expired
    EXPIRING_SOON_DAYS: int = 7
    RENEWAL_SESSION_TIMEOUT_HOURS: int = 24  # Gateway sessions without a callback are swept after this
    PAYMENT_AMOUNT_TOLERANCE: float = 0.01  # Fraction of the invoice amount

    # Affiliate Settings
    AFFILIATE_MIN_WITHDRAWAL_AMOUNT: float = 100.0

    # Background jobs
    SCHEDULER_ENABLED: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True


# Singleton instance - import this in other modules
settings = Settings()
