from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
from uuid import UUID
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Stock Count Reconciliation"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # External stock oracle (legacy ERP stock lookup)
    STOCK_ORACLE_URL: str = ""  # Empty disables live lookups; snapshots are used
    STOCK_ORACLE_TIMEOUT: float = 30.0  # Seconds
    DEFAULT_COMPANY_CODE: str = "3"

    # Audit ledger
    SYSTEM_AUDIT_USER_ID: Optional[UUID] = None  # Account credited with automatic audits

    # Count item versioning
    ITEM_KEY_SLOTS: int = 2  # Locations allowed per item key before rolling to -vN
    ITEM_KEY_MAX_ATTEMPTS: int = 20  # Slot claims retried on concurrent conflicts

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
        return list(self.CORS_ORIGINS)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
