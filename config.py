"""Configuration management using Pydantic Settings."""
import logging
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Security
    jwt_secret: str = Field(default="dev-secret-change-me", description="Shared token signing key")
    jwt_algorithm: str = Field(default="HS256", description="Token signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Verified session token TTL")
    pending_token_expire_minutes: int = Field(default=5, description="Pre-second-factor token TTL")
    totp_issuer: str = Field(default="Directory", description="Issuer shown in authenticator apps")

    # Database
    database_url: str = Field(default="mongodb://localhost:27017", description="MongoDB connection URL")
    database_name: str = Field(default="directory", description="MongoDB database name")

    # Activity monitor
    monitor_enabled: bool = Field(default=True, description="Run the write-rate detector in the background")
    monitor_interval_seconds: float = Field(default=60.0, description="Seconds between detector runs")
    monitor_threshold: int = Field(default=10, description="Flag actors with more events than this")
    monitor_window_seconds: int = Field(default=120, description="Trailing window inspected per run")

    # Live sync
    broadcast_send_timeout: float = Field(default=5.0, description="Per-observer send timeout in seconds")

    # Application
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    log_level: str = Field(default="INFO", description="Logging level")
    port: int = Field(default=8000, description="Port used when running main.py directly")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
