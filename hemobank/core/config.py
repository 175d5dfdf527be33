from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "HemoBank API"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "production"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # postgresql://... is rewritten to postgresql+asyncpg://...
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/hemobank"
    # pool settings do not apply to sqlite
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    # Bearer tokens are minted by the auth service; only verified here
    SECRET_KEY: str = ""
    ALGORITHM: str = "HS256"

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s (%(request_id)s): %(message)s"
    LOG_FILE: str = "logs/hemobank.log"

    UNIT_SHELF_LIFE_DAYS: int = 42
    DEFAULT_STOCK_THRESHOLD: int = 10
    DONOR_DEFERRAL_DAYS: int = 90
    DONOR_MATCH_RADIUS_KM: float = 50.0
    DONOR_MATCH_LIMIT: int = 20

    MAINTENANCE_NOTIFICATION_TTL_DAYS: int = 7
    LOW_PRIORITY_NOTIFICATION_TTL_DAYS: int = 30
    REALTIME_QUEUE_SIZE: int = 100

    # Intervals are in seconds
    SCHEDULER_ENABLED: bool = True
    STOCK_MONITOR_INTERVAL: int = 300
    EXPIRY_SWEEP_INTERVAL: int = 900
    NOTIFICATION_CLEANUP_INTERVAL: int = 3600
    STOCK_MONITOR_MATCH_DONORS: bool = True

    @field_validator("DEBUG", "SCHEDULER_ENABLED", "STOCK_MONITOR_MATCH_DONORS", mode="before")
    @classmethod
    def parse_bool(cls, v):
        if isinstance(v, str):
            return v.strip().lower() in ("true", "1", "yes", "on")
        return bool(v)

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def database_url_async(self) -> str:
        prefix = "postgresql://"
        if self.DATABASE_URL.startswith(prefix):
            return "postgresql+asyncpg://" + self.DATABASE_URL[len(prefix):]
        return self.DATABASE_URL

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


settings = Settings()


def get_settings() -> Settings:
    return settings
