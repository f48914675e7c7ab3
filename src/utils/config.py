"""Application Configuration"""

from pydantic_settings import BaseSettings
from typing import List
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings"""

    APP_NAME: str = "PHI Audit Engine"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Audit
    AUDIT_BATCH_SIZE: int = 50
    AUDIT_FLUSH_INTERVAL_SECONDS: float = 30.0
    AUDIT_LOG_RETENTION_DAYS: int = 2555  # 7 years

    # Security alerts
    SUSPICIOUS_LOOKBACK_MINUTES: int = 60
    FAILED_LOGIN_THRESHOLD: int = 5
    UNAUTHORIZED_ACCESS_THRESHOLD: int = 3

    # Rate limiting
    API_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_CLEANUP_INTERVAL_SECONDS: float = 300.0
    RATE_LIMIT_IDLE_TTL_SECONDS: float = 3600.0

    # Persistence
    PERSISTENCE_TIMEOUT_SECONDS: float = 5.0

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
