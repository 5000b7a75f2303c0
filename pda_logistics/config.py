from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./pda_logistics.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "PDA Logistics Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Order assignment
    MAX_CONCURRENT_ORDERS: int = 5  # Open orders one agent may hold across all order kinds
    DELIVERY_CODE_LENGTH: int = 6

    # Confirmations
    OTP_LENGTH: int = 6
    OTP_EXPIRY_MINUTES: int = 30
    GPS_RADIUS_TOLERANCE_METERS: int = 100
    GPS_STRICT_MODE: bool = True  # Reject gated confirmations outside the radius
    GPS_TRAIL_LIMIT: int = 50  # GPS points returned with order tracking

    # Payouts
    SELLER_PAYOUT_ON_PSM_DEPOSIT: bool = True  # Release seller payout when goods reach the pickup site
    COMMISSION_GRACE_PERIOD_MINUTES: int = 5  # Dispute window before commission approval

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"
    COMMISSION_APPROVAL_INTERVAL_MINUTES: int = 1
    STUCK_ORDER_TIMEOUT_HOURS: int = 24

    # Notifications
    ADMIN_USER_ID: int = 1
    NOTIFICATION_SINK: str = "log"  # "log" or "database"

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
