from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "opscord-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    gemini_api_key: str | None = None
    embedding_model: str = "text-embedding-004"
    embedding_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    embedding_timeout_seconds: float = 10.0
    embedding_max_chars: int = 8000
    audit_timeout_seconds: float = 2.0
    semantic_link_threshold: float = 0.7
    semantic_link_limit: int = 5
    related_context_threshold: float = 0.6
    queue_max_attempts: int = 3
    queue_retry_base_seconds: int = 30
    queue_retry_max_seconds: int = 600
    queue_processing_timeout_seconds: int = 300
    job_max_attempts: int = 3
    job_retry_failed_ceiling: int = 6
    job_batch_ceiling: int = 100
    job_retry_base_seconds: float = 1.0
    job_retry_max_seconds: float = 60.0
    job_processing_timeout_seconds: int = 600
    job_queue_secret: str | None = None
    github_webhook_secret: str | None = None
    notification_timeout_seconds: float = 10.0
    api_base_url: str = "http://localhost:8000"
    worker_poll_interval_seconds: float = 5.0
    worker_max_backoff_seconds: float = 60.0
    worker_reaper_interval_seconds: float = 60.0
    worker_queue_batch_size: int = 10
    worker_job_batch_size: int = 10
    otel_enabled: bool = True
    otel_service_name: str = "opscord-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="OPSCORD_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
