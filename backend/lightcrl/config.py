import os
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Security
    MASTER_KEY: str = Field(..., min_length=32, description="Master key for encryption (min 32 chars)")
    ADMIN: str = "admin"
    ADMIN_PASSWORD: str = Field(..., description="Admin password (plaintext or bcrypt hash)")

    # Database
    DB_TYPE: str = "sqlite"
    DATABASE_URL: Optional[str] = None

    # JWT
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440
    JWT_ALGORITHM: str = "HS256"

    # CRL defaults, used when a CA has no stored CRL configuration
    CRL_VALIDITY_HOURS: int = Field(168, ge=1)
    CRL_OVERLAP_HOURS: int = Field(2, ge=0)
    CRL_INCLUDE_EXPIRED: bool = False
    CRL_SIGN: bool = True
    CRL_INCLUDE_ISSUER: bool = True
    CRL_INCLUDE_EXTENSIONS: bool = True

    # CRL scheduler
    CRL_SCHEDULER_ENABLED: bool = True
    CRL_SCHEDULER_INTERVAL_MINUTES: int = Field(30, ge=1)
    CRL_SCHEDULER_MAX_WORKERS: int = Field(4, ge=1)

    # CRL distribution
    CRL_PUBLISH_TIMEOUT_SECONDS: float = Field(10.0, gt=0)
    CRL_PUBLISH_MAX_WORKERS: int = Field(4, ge=1)
    CRL_MAX_RETRIES: int = Field(5, ge=1)

    # CRL retention and reporting
    CRL_RETENTION_DAYS: int = Field(90, ge=1)
    CRL_STATS_WINDOW_DAYS: int = Field(30, ge=1)

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"

    @property
    def get_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if self.DB_TYPE == "sqlite":
            db_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "lightcrl.db")
            os.makedirs(os.path.dirname(db_path), exist_ok=True)
            return f"sqlite:///{db_path}"
        raise ValueError("DATABASE_URL must be set for non-SQLite databases")


settings = Settings()
