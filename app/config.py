from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./affiliates.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings
    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # App Settings
    APP_NAME: str = "Affiliate Commission Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Redis Cache Settings
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"
    CACHE_ENABLED: bool = True
    REFERRAL_CACHE_TTL: int = 300  # 5 minutes for resolved referral codes

    # Referral Tracking
    AFFILIATE_REF_PARAM: str = "ref"  # Query parameter carrying the referral code
    AFFILIATE_COOKIE_NAME: str = "affiliate_ref"
    VISITOR_COOKIE_NAME: str = "affiliate_visitor"
    SESSION_COOKIE_NAME: str = "session"
    CLICK_TRACKING_TIMEOUT_SECONDS: float = 2.0  # Tracking must never delay the page
    AFFILIATE_LINK_BASE_URL: str = "http://localhost:8000"

    # Fraud Heuristics (advisory thresholds)
    FRAUD_WINDOW_DAYS: int = 30
    FRAUD_MAX_CLICK_VISITOR_RATIO: float = 10.0
    FRAUD_MAX_CONVERSIONS: int = 50
    FRAUD_MAX_CLICKS: int = 1000
    FRAUD_REPORT_LIMIT: int = 20

    # Webhooks from the order / payment collaborators
    WEBHOOK_SECRET: str = "change-me-webhook-secret"

    # Background Jobs
    SCHEDULER_ENABLED: bool = True
    FRAUD_SCAN_INTERVAL_MINUTES: int = 60
    RECONCILE_INTERVAL_MINUTES: int = 30

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return self.CORS_ORIGINS

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
