"""Configuration helpers for the briefing pipeline."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import AuthState, RemoteConfig
from .retry import RetryPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True, extra="ignore"
    )

    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    briefing_model: str = Field(
        "gpt-4.1-mini", description="Model used for direct (non-proxy) briefing calls."
    )
    max_tokens: int = Field(
        4000,
        description="Max output tokens per briefing; 0 removes the cap.",
    )
    temperature: float = Field(0.3, description="Generation temperature.")
    proxy_url: str | None = Field(
        None,
        alias="BRIEFING_PROXY_URL",
        description="Base URL of the analyze-briefing proxy; when set, all calls go through it.",
    )
    proxy_timeout_seconds: float = Field(120.0, description="HTTP timeout for proxy calls.")
    supabase_url: str | None = Field(None, alias="SUPABASE_URL")
    supabase_anon_key: str | None = Field(None, alias="SUPABASE_ANON_KEY")
    supabase_table: str = Field("briefings", description="Remote table holding briefings.")
    user_id: str | None = Field(None, alias="BREVITA_USER_ID")
    access_token: str | None = Field(
        None,
        alias="BREVITA_ACCESS_TOKEN",
        description="Session token for the remote store and the proxy.",
    )
    history_data_dir: str | None = Field(
        None,
        alias="HISTORY_DATA_DIR",
        description="Optional override for local history storage; defaults to data/history.",
    )
    retry_max_attempts: int = Field(3, description="Attempts per transport call.")
    retry_base_delay_seconds: float = Field(2.0, description="Delay after the first failure.")
    retry_backoff_factor: float = Field(2.0, description="Multiplier applied per extra attempt.")
    log_level: str = Field("INFO", alias="LOG_LEVEL")


def get_settings() -> Settings:
    """Return a settings instance built from the current environment."""
    return Settings()


def history_root(settings: Settings) -> Path:
    """Base directory for locally stored briefings."""
    if settings.history_data_dir:
        return Path(settings.history_data_dir).expanduser().resolve()
    return Path.cwd() / "data" / "history"


def remote_config(settings: Settings) -> RemoteConfig:
    return RemoteConfig(
        url=settings.supabase_url,
        anon_key=settings.supabase_anon_key,
        table=settings.supabase_table,
    )


def auth_state(settings: Settings) -> AuthState:
    return AuthState(user_id=settings.user_id, access_token=settings.access_token)


def retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay_seconds,
        backoff_factor=settings.retry_backoff_factor,
    )
