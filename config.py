import os
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    # Application Settings
    APP_NAME: str = "CODLedger API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"

    # Database Settings
    # DATABASE_URL wins when set (sqlite for local runs and tests)
    DATABASE_URL: Optional[str] = None
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", "3306"))
    DB_USER: str = os.getenv("DB_USER", "codledger")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "")
    DB_NAME: str = os.getenv("DB_NAME", "codledger")

    # JWT Settings
    SECRET_KEY: str = os.getenv("SECRET_KEY", "codledger-dev-secret-change-me")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # CORS Settings
    CORS_ORIGINS: List[str] = ["*"]

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Redis (rate guard window store)
    REDIS_ENABLED: bool = False
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Cash-on-delivery collection limits
    MAX_COLLECTION_AMOUNT: float = 10000.00
    MAX_OVERPAYMENT: float = 100.00
    NOTES_MAX_LENGTH: int = 500
    TIMESTAMP_FUTURE_SKEW_MINUTES: int = 5
    TIMESTAMP_MAX_AGE_HOURS: int = 24
    COLLECTIBLE_ORDER_STATUSES: List[str] = ["ready", "out_for_delivery", "delivered"]
    PAYMENT_RECORD_TRIGGER_STATUSES: List[str] = ["processing", "preparing"]

    # Reconciliation
    AUTO_APPROVE_TOLERANCE: float = 2.00
    DISCREPANCY_THRESHOLD: float = 50.00
    EXPORT_MAX_DAYS: int = 366

    # Rate guard: collection attempts per courier per rolling window
    RATE_LIMIT_MAX_ATTEMPTS: int = 10
    RATE_LIMIT_WINDOW_SECONDS: int = 3600

    # Daily reconciliation sweep
    SWEEP_ENABLED: bool = True
    SWEEP_HOUR: int = 0
    SWEEP_MINUTE: int = 15

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def SQLALCHEMY_DATABASE_URL(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"mysql+pymysql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
