"""Application settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "storybook-orchestrator"
    app_env: str = "dev"
    app_debug: bool = False
    log_level: str = "INFO"
    database_url: str = ""

    # Shared secret used by the auth provider to sign bearer tokens (HS256).
    jwt_secret: str = ""
    jwt_audience: str = "authenticated"

    external_base_url: str = "https://suna-1.learnwise.app"
    external_save_url: str = ""
    external_model_name: str = "openai/gpt-4o"
    external_timeout_s: float = Field(default=30.0, ge=0.5)
    stream_timeout_s: float = Field(default=120.0, ge=1.0)
    stream_read_size: int = Field(default=4096, ge=1)

    rate_limit_window_s: int = Field(default=3600, ge=1)
    submit_rate_limit: int = Field(default=50, ge=1)
    status_rate_limit: int = Field(default=200, ge=1)
    result_rate_limit: int = Field(default=100, ge=1)
    save_rate_limit: int = Field(default=100, ge=1)

    # Stored on each job mapping; nothing consumes it yet.
    max_job_retries: int = Field(default=3, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="STORYBOOK_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_save_url(self) -> str:
        if self.external_save_url:
            return self.external_save_url
        return f"{self.external_base_url.rstrip('/')}/api/suna/save"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
