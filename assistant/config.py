from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./assistant.db"
    assistant_service_token: str = "change-me"
    user_timezone: str = "Europe/London"
    assistant_name: str = "Yo!"
    completion_base_url: str | None = None
    completion_api_key: str | None = None
    completion_path: str = "/v1/chat/completions"
    completion_model: str = "gpt-4o-mini"
    completion_temperature: float = 0.7
    # Passed to httpx as a per-phase limit (connect, read, write, pool), not a
    # wall-clock deadline for the whole completion call.
    classification_timeout_seconds: float = 15.0
    reply_timeout_seconds: float = 30.0
    assignment_timeout_seconds: float = 120.0
    reply_max_tokens: int = 500
    voice_reply_max_tokens: int = 150
    context_window_messages: int = 10
    default_meeting_provider: str = "google-meet"
    assignment_workers: int = 2
    assignment_lease_seconds: int = 300
    assignment_stale_after_seconds: int = 600
    assignment_recovery_interval_seconds: int = 60
    rate_limit_window_seconds: int = 3600
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    version: str = "0.0.0"
    git_sha: str = "unknown"

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)


settings = Settings()
