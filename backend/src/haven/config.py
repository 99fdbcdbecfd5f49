"""Configuration management."""

from typing import Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings, validated once at import."""

    # Database (PostgreSQL) - constructed from parts
    use_postgres: bool = False
    db_host: str = "localhost"
    db_port: int = Field(default=5432, ge=1, le=65535)
    db_name: str = "haven"
    db_user: str = "haven"
    db_password: str = ""

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Redis backs the stream session registry when set (multi-instance deployments)
    redis_url: str | None = None

    # Text generation provider
    provider_backend: Literal["http", "claude", "mock"] = "http"
    provider_base_url: str = "https://router.huggingface.co/v1"
    provider_api_key: str = ""
    provider_model: str = "zai-org/GLM-4.6"
    claude_model: str = "haiku"

    # Generation defaults
    ai_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    ai_max_tokens: int = Field(default=500, ge=1, le=4096)
    ai_timeout_seconds: float = Field(default=30.0, gt=0)
    ai_max_retries: int = Field(default=3, ge=1, le=10)
    ai_retry_base_delay: float = Field(default=1.0, ge=0)

    # Context window
    context_max_tokens: int = Field(default=2000, ge=100)
    context_max_journals: int = Field(default=5, ge=0, le=50)
    context_max_messages: int = Field(default=10, ge=1, le=100)
    context_time_range_days: int = Field(default=30, ge=1)

    # Streaming
    stream_persist_every: int = Field(default=10, ge=1)
    stream_crisis_scan_every: int = Field(default=5, ge=1)
    stream_max_age_minutes: float = Field(default=10, gt=0)
    stream_sweep_interval_seconds: float = Field(default=60, gt=0)
    stream_heartbeat_seconds: float = Field(default=15, gt=0)

    # Crisis
    national_crisis_hotline: str = "988"
    campus_hotline: str = "Contact your campus counseling center"
    alert_admins_on_crisis: bool = True

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value

    @field_validator("provider_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


# Global settings instance
settings = Settings()
