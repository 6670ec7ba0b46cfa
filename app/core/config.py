from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Database
    DATABASE_URL: Optional[str] = None
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_USER: str = "fleet"
    DB_PASSWORD: str = "fleet_password"
    DB_NAME: str = "fleet_db"

    # Redis (optional - for production event bus)
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Message Handler web service (bridge to field devices)
    MH_WS_ADDRESS: str = "localhost"
    MH_WS_PORT: int = 8080
    MH_WS_USER: Optional[str] = None
    MH_WS_PASSWORD: Optional[str] = None
    MH_WS_TIMEOUT_SECONDS: float = 10.0

    @property
    def mh_base_url(self) -> str:
        return f"http://{self.MH_WS_ADDRESS}:{self.MH_WS_PORT}"

    # Device sync
    SYNC_FEATURE_TITLE: str = "Asset Syncing"
    SYNC_DEVICE_MODE: str = "SCCT"
    SYNC_HISTORY_ANNIHILATE: bool = True  # False keeps annihilated entries out of History merges
    MIN_WATERMARK_DIGITS: int = 13
    GENERIC_POI_IMAGE_ID: Optional[int] = None

    # Alerts
    NON_REPORT_DELAY_MS: int = 10000
    MAX_NON_REPORT_THRESHOLD_MS: int = 259200000  # 72 hours
    NON_REPORT_INIT_ON_STARTUP: bool = True

    # Email
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    EMAIL_FROM: Optional[str] = None
    EMAIL_FROM_NAME: str = "Fleet Alerts"

    # SMS gateway
    SMS_GATEWAY_URL: Optional[str] = None
    SMS_GATEWAY_TOKEN: Optional[str] = None

    # URLs
    FRONTEND_URL: str = "http://localhost:3000"

    class Config:
        env_file = ".env"
        extra = "ignore"  # Allow extra fields in .env file

settings = Settings()
