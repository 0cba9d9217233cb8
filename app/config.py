# app/config.py - Environment-driven configuration
from dotenv import load_dotenv

load_dotenv()
from typing import Optional, Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings read from the environment and an optional .env file"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "TCM Telemedicine Platform"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    server_host: str = Field(default="0.0.0.0", alias="SERVER_HOST")
    server_port: int = Field(default=3000, alias="SERVER_PORT")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")
    database_pool_size: int = Field(default=10, alias="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=20, alias="DATABASE_MAX_OVERFLOW")
    database_timeout: int = Field(default=5, alias="DATABASE_TIMEOUT")

    # Cache
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    cache_enabled: bool = Field(default=True, alias="CACHE_ENABLED")
    cache_timeout: int = Field(default=5, alias="CACHE_TIMEOUT")

    # Security
    jwt_secret: str = Field(..., alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_expiration: int = Field(default=86400, alias="JWT_EXPIRATION")
    password_hash_time_cost: int = Field(default=4, alias="PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = Field(default=65536, alias="PASSWORD_HASH_MEMORY_COST")
    rate_limit_login: int = Field(default=10, alias="RATE_LIMIT_LOGIN")

    # Bootstrap administrator
    admin_account: Optional[str] = Field(default=None, alias="ADMIN_ACCOUNT")
    admin_password: Optional[str] = Field(default=None, alias="ADMIN_PASSWORD")
    admin_phone: str = Field(default="13800000000", alias="ADMIN_PHONE")

    # File storage
    storage_local_dir: str = Field(default="uploads", alias="STORAGE_LOCAL_DIR")
    storage_public_url: str = Field(default="/uploads", alias="STORAGE_PUBLIC_URL")
    storage_max_file_size: int = Field(default=10 * 1024 * 1024, alias="STORAGE_MAX_FILE_SIZE")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000", "http://localhost:5173"], alias="CORS_ORIGINS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000", "http://localhost:5173"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite:///")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("jwt_secret")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v

    @field_validator("redis_url", mode='before')
    @classmethod
    def empty_redis_url(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def redis_enabled(self) -> bool:
        return bool(self.cache_enabled and self.redis_url)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

# Note: Do not instantiate settings at import time to avoid failing
# on missing environment variables. Use `get_settings()` instead.
