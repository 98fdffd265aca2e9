"""
Configuration for the expense tracker.

Values come from environment variables or a local .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "default_jwt_secret"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_environment: str = Field(default="development")
    database_url: str = Field(default="sqlite:///./expenses.db")

    # Tokens
    jwt_secret: str = Field(default=DEFAULT_JWT_SECRET)
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60, ge=1)

    # Attachments
    upload_dir: str = Field(default="./uploads")
    max_upload_size_mb: int = Field(default=5, ge=1, le=50)
    blob_timeout_seconds: float = Field(default=5.0, gt=0)

    # Notifications
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    mail_from: str = Field(default="no-reply@expense-tracker.local")
    notification_timeout_seconds: float = Field(default=5.0, gt=0)

    # Per client address; 0 turns the limiter off
    rate_limit_requests: int = Field(default=100, ge=0)
    rate_limit_window_seconds: float = Field(default=900.0, gt=0)

    default_currency: str = Field(default="USD", min_length=3, max_length=3)

    log_level: str = Field(default="INFO")
    log_json: bool = True

    @model_validator(mode="after")
    def require_secret_in_production(self) -> "Settings":
        if (
            self.app_environment.lower() == "production"
            and self.jwt_secret == DEFAULT_JWT_SECRET
        ):
            raise ValueError("JWT_SECRET must be set explicitly in production")
        return self

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    @property
    def uses_default_secret(self) -> bool:
        return self.jwt_secret == DEFAULT_JWT_SECRET


@lru_cache()
def get_settings() -> Settings:
    """Cached settings; call get_settings.cache_clear() to reload."""
    return Settings()
