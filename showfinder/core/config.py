from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "card-show-ingest"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_temperature: float = 0.2
    gemini_top_p: float = 0.8
    gemini_top_k: int = 40
    gemini_max_output_tokens: int = 8192
    gemini_timeout_seconds: float = 30.0
    fetch_timeout_seconds: float = 15.0
    fetch_user_agent: str = "Mozilla/5.0 (compatible; CardShowFinderBot/1.0)"
    max_chunk_bytes: int = 100_000
    max_chunks: int = 3
    google_maps_api_key: str | None = None
    geocode_timeout_seconds: float = 10.0
    ingest_batch_size: int = 5
    ingest_item_delay_seconds: float = 1.0
    ingest_batch_delay_seconds: float = 3.0
    ingest_max_retries: int = 3
    ingest_retry_delay_seconds: float = 2.0
    quality_weights_json: str | None = None
    pending_page_max: int = 100
    duplicate_similarity_threshold: float = 0.6
    duplicate_group_limit: int = 100
    otel_enabled: bool = True
    otel_service_name: str = "card-show-ingest"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SF_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
