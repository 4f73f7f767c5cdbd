from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    app_name: str = Field(default="DeskRelay")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    log_format: str = Field(
        default="%(asctime)s %(levelname)s [%(context)s %(trace_id)s] %(name)s %(message)s"
    )
    # Comma separated logger=LEVEL overrides, e.g. "deskrelay.feeds=DEBUG"
    log_component_levels: str | None = Field(default="asyncpg=WARNING")
    # Label for this execution context in logs and traces; defaults to host:pid
    context_name: str | None = Field(default=None)

    # Remote system of record; in-process stores are used when unset
    postgres_dsn: str | None = Field(default=None)

    # Ticket lifecycle policy
    auto_complete_timeout_seconds: float = Field(default=30 * 60)
    max_active_tickets_per_engineer: int = Field(default=3)

    # Ephemeral request policy
    code_share_request_ttl_seconds: float = Field(default=5)
    screen_share_request_ttl_seconds: float = Field(default=10)

    # Typing indicator policy
    typing_throttle_seconds: float = Field(default=5)
    typing_expiry_seconds: float = Field(default=6)
    typing_check_interval_seconds: float = Field(default=1)

    # Change feed reconnection
    change_feed_max_retries: int = Field(default=5)
    change_feed_backoff_seconds: float = Field(default=0.5)
    change_feed_max_backoff_seconds: float = Field(default=10)

    # Observability configuration
    otel_enabled: bool = Field(default=False)
    otel_service_name: str = Field(default="deskrelay")
    otel_exporter_otlp_endpoint: str | None = Field(default=None)
    otel_exporter_otlp_headers: str | None = Field(default=None)


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the application settings."""

    return Settings()
