"""Application configuration settings.

All configuration values are loaded from environment variables (.env file)
once at process start. No sensitive values should be hardcoded here.
"""

import re
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from mediacache.core.exceptions import ConfigurationError

SAFE_TENANT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

DEFAULT_QUALITY_TIERS = {
    "low": 60,
    "standard": 80,
    "high": 90,
    "lossless": 100,
    "auto:eco": 60,
    "auto:good": 80,
    "auto:best": 90,
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Media Transform Cache"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # CORS
    CORS_ORIGINS: list[str] = ["*"]

    # Remote bucket storage (enabled when STORAGE_BUCKET is set)
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = "auto"
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # R2, MinIO and friends
    STORAGE_PUBLIC_URL: Optional[str] = None  # Custom public-facing domain

    # Local filesystem storage (enabled when LOCAL_STORAGE_PATH is set)
    LOCAL_STORAGE_PATH: Optional[str] = None
    LOCAL_PUBLIC_URL: Optional[str] = None

    # Cloudinary storage (enabled when CLOUDINARY_CLOUD_NAME is set)
    CLOUDINARY_CLOUD_NAME: str = ""
    CLOUDINARY_API_KEY: str = ""
    CLOUDINARY_API_SECRET: str = ""
    CLOUDINARY_FOLDER: str = "mediacache"

    # In-memory storage, development only
    MEMORY_STORAGE_ENABLED: bool = False

    # Process-wide provider override (s3, local, cloudinary, memory)
    STORAGE_PROVIDER: Optional[str] = None

    # Transform policy
    DEFAULT_WIDTH: Optional[int] = None
    MAX_WIDTH: int = 3840
    DEFAULT_QUALITY: str = "standard"
    QUALITY_TIERS: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_QUALITY_TIERS))
    DEFAULT_FORMAT: str = "webp"

    # Tenancy
    ALLOWED_TENANTS: list[str] = []
    DEFAULT_TENANT: str = "default"

    # Origin fetch
    MAX_SOURCE_BYTES: int = 50 * 1024 * 1024
    FETCH_TIMEOUT_SECONDS: float = 8.0
    FETCH_MAX_REDIRECTS: int = 3
    FETCH_RESOLVE_HOSTS: bool = True
    FETCH_USER_AGENT: str = "mediacache/0.1"

    # Concurrency
    ENCODE_WORKERS: int = 4
    COALESCE_INFLIGHT: bool = True

    # Monitoring dashboard (disabled when no access code is configured)
    MONITOR_ACCESS_CODE: Optional[str] = None
    MONITOR_MAX_KEYS: int = 10000

    # Email alerts for server-side failures
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""
    SMTP_TLS: bool = True
    ALERT_EMAIL: Optional[str] = None

    # FFmpeg binaries for video transcoding
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def environment(self) -> str:
        return "development" if self.DEBUG else "production"

    def validate_runtime(self) -> None:
        """Check cross-field constraints that pydantic cannot express.

        Raises:
            ConfigurationError: If the configuration cannot serve requests
        """
        if not (
            self.STORAGE_BUCKET
            or self.LOCAL_STORAGE_PATH
            or self.CLOUDINARY_CLOUD_NAME
            or self.MEMORY_STORAGE_ENABLED
        ):
            raise ConfigurationError(
                "At least one storage provider (bucket, local, cloudinary or memory) is required"
            )

        if self.CLOUDINARY_CLOUD_NAME and not (self.CLOUDINARY_API_KEY and self.CLOUDINARY_API_SECRET):
            raise ConfigurationError("Cloudinary API key and secret are required")

        for tenant in [*self.ALLOWED_TENANTS, self.DEFAULT_TENANT]:
            if not SAFE_TENANT_PATTERN.match(tenant):
                raise ConfigurationError(f"Tenant name is not path-safe: {tenant!r}")

        for tier, value in self.QUALITY_TIERS.items():
            if not 0 <= value <= 100:
                raise ConfigurationError(f"Quality tier {tier!r} must be within 0-100, got {value}")

        tiers = {tier.lower() for tier in self.QUALITY_TIERS}
        default_quality = self.DEFAULT_QUALITY.strip().lower()
        if default_quality not in tiers and not default_quality.isdigit():
            raise ConfigurationError(f"Unknown default quality: {self.DEFAULT_QUALITY!r}")

        if self.MAX_WIDTH <= 0:
            raise ConfigurationError("MAX_WIDTH must be positive")

        if self.DEFAULT_WIDTH is not None and not 0 < self.DEFAULT_WIDTH <= self.MAX_WIDTH:
            raise ConfigurationError("DEFAULT_WIDTH must be positive and not exceed MAX_WIDTH")


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()


settings = get_settings()
