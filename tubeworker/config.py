"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Queue server connection
    queue_host: str = "127.0.0.1"
    queue_port: int = 11300
    queue_persistent: bool = False
    queue_connect_timeout_seconds: float = 10.0
    queue_read_timeout_seconds: float | None = None
    queue_max_line_length: int = 224

    # Adapter defaults applied when a job does not specify its own
    queue_default_tube: str = "default"
    queue_default_priority: int = 100
    queue_default_delay: int = 0
    queue_default_ttr: int = 60

    # Worker Configuration
    worker_memory_limit_mb: int = 128
    worker_stop_after_handled_jobs: int = 100
    worker_idle_sleep_seconds: float = 1.0
    worker_pause_poll_seconds: float = 1.0
    worker_enforce_deadline: bool = True

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "tube-worker"
    tracing_enabled: bool = False
    prometheus_port: int = 0  # 0 disables the exporter
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
