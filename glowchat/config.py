"""
Configuration and settings for the GlowChat backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")
    cors_origins: str = Field(default="*")

    # Database: Postgres when DATABASE_URL is set, otherwise a local SQLite file
    database_url: Optional[str] = Field(default=None)
    sqlite_path: str = Field(default="data/glowchat.db")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "GLOWCHAT_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )

    # Bearer tokens
    jwt_secret: str = Field(default="dev_secret")
    jwt_algorithm: str = Field(default="HS256")
    token_ttl_seconds: Optional[int] = Field(default=None)

    # Uploads: S3 presigned PUTs, or local disk fallback
    upload_dir: str = Field(default="uploads")
    s3_bucket: Optional[str] = Field(default=None)
    s3_region: str = Field(default="us-east-1")
    s3_endpoint: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    presign_expires_seconds: int = Field(default=900)
    story_ttl_seconds: int = Field(default=24 * 60 * 60)

    # One-time codes
    twilio_account_sid: Optional[str] = Field(default=None)
    twilio_auth_token: Optional[str] = Field(default=None)
    twilio_phone_number: Optional[str] = Field(default=None)
    redis_url: Optional[str] = Field(default=None)
    otp_ttl_seconds: int = Field(default=5 * 60)

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+pysqlite:///{self.sqlite_path}"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
