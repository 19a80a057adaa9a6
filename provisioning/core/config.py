from pathlib import Path
import os
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]  # repo root

ENV_FILE = os.getenv("ENV_FILE", str(BASE_DIR / ".env"))

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=ENV_FILE, extra="ignore")

    APP_ENV: str = "local"
    DATABASE_URL: str
    CORS_ORIGINS: str = "*"  # Comma-separated list of allowed origins, or "*" for all
    LOG_LEVEL: str = "INFO"

    # Import engine tuning
    IMPORT_MAX_ROWS: int = 10_000
    IMPORT_MAX_FILE_BYTES: int = 10 * 1024 * 1024
    IMPORT_BYTES_PER_ROW: int = 512  # rough size of one CSV line, used for row estimates
    IMPORT_BATCH_THRESHOLD: int = 500
    IMPORT_CAPACITY_PROFILE: Literal["low", "medium", "high"] = "medium"
    IMPORT_HISTORY_LIMIT: int = 50
    IMPORT_HASH_WORKERS: int = 32  # upper bound on hashing threads per chunk

    ROLLBACK_WINDOW_HOURS: int = 24
    AUDIT_RETENTION_DAYS: int = 90

    PASSWORD_HASH_METHOD: str = "scrypt"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list, handling '*' for development"""
        if self.CORS_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

settings = Settings()
