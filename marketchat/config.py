from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    APP_NAME: str = "Marketplace Chat"
    LOG_LEVEL: str = "INFO"

    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "marketchat"
    # multi-document transactions need a replica set
    MONGO_USE_TRANSACTIONS: bool = False

    REDIS_URL: Optional[str] = None

    FCM_SERVICE_ACCOUNT_FILE: Optional[str] = None
    FCM_PROJECT_ID: Optional[str] = None

    # listing images, removed by the account-deletion cascade
    MEDIA_S3_BUCKET: Optional[str] = None
    MEDIA_S3_ENDPOINT_URL: Optional[str] = None
    MEDIA_S3_ACCESS_KEY_ID: Optional[str] = None
    MEDIA_S3_SECRET_ACCESS_KEY: Optional[str] = None
    MEDIA_PUBLIC_URL: Optional[str] = None

    JWT_SECRET: str = "dev-secret-change-me"
    JWT_ALGORITHM: str = "HS256"
    INTERNAL_API_KEY: str = "dev-internal-key"

    INBOX_PAGE_SIZE: int = 20
    HISTORY_PAGE_SIZE: int = 50
    THREAD_SNAPSHOT_LIMIT: int = 500

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
