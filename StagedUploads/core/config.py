from functools import lru_cache
from typing import Dict, List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Staged Upload Broker"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Ledger database
    DATABASE_URL: str = "sqlite:///./staged_uploads.db"

    # Object storage
    STORAGE_BACKEND: str = "memory"  # "memory" or "minio"
    MINIO_ENDPOINT: str = "localhost:9000"
    MINIO_ACCESS_KEY: str = "minioadmin"
    MINIO_SECRET_KEY: str = "minioadmin"
    MINIO_SECURE: bool = False
    STAGING_BUCKET: str = "staging"
    PERMANENT_BUCKET: str = "permanent"
    STORAGE_TIMEOUT_SECONDS: float = 5.0

    # Public addresses
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    CDN_BASE_URL: str = "https://cdn.example.com"

    # Grants
    CREDENTIAL_SECRET: str = "change-me-in-prod"
    GRANT_TTL_SECONDS: int = 900
    ROLE_SIZE_CEILINGS: Dict[str, int] = {
        "admin": 50 * 1024 * 1024,
        "member": 10 * 1024 * 1024,
    }
    ALLOWED_CONTENT_TYPES: List[str] = [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "application/pdf",
    ]
    # Declared types without a registered signature pass promotion when true.
    ALLOW_UNRECOGNIZED_TYPES: bool = True

    # Rate limiting
    RATE_LIMIT: int = 30
    RATE_WINDOW_SECONDS: int = 60
    RATE_LIMIT_BACKEND: str = "memory"  # "memory" or "redis"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Expiry sweep
    RUN_SWEEPER: bool = True
    SWEEP_INTERVAL_SECONDS: float = 60.0

    # Security
    API_KEYS: Dict[str, str] = {"change-me-in-prod": "admin"}
    WEBHOOK_TOKEN: str = "change-me-in-prod"

    class Config:
        env_file = ".env"
        secrets_dir = "/run/secrets"


@lru_cache()
def get_settings():
    return Settings()
