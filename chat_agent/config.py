"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-2024-11-20", alias="OPENAI_MODEL")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    database_path: Path = Field(default=Path("chat_agent.db"), alias="DATABASE_PATH")
    # Unset leaves the upload side-channel unbound; its routes then answer 500.
    upload_dir: Path | None = Field(default=None, alias="UPLOAD_DIR")
    public_base_url: str | None = Field(default=None, alias="PUBLIC_BASE_URL")
    max_steps: int = Field(default=10, ge=1, alias="MAX_STEPS")
    request_timeout_seconds: float = Field(default=60.0, alias="REQUEST_TIMEOUT_SECONDS")
    scheduler_poll_interval_seconds: float = Field(default=2.0, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    http_host: str = Field(default="0.0.0.0", alias="HTTP_HOST")
    http_port: int = Field(default=8000, alias="HTTP_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()
